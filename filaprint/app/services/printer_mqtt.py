"""MQTT link to a single Bambu Lab printer.

Owns one paho client per printer: TLS session setup with a bounded connect
wait, subscription to the device topics, inbound parsing through the
message router and completion detector, fan-out to registered handlers,
and publishing of operator commands.

paho runs its network loop in its own thread, so every callback here runs
off the asyncio loop. Anything that touches asyncio state goes through
call_soon_threadsafe. Reconnection is driven from the asyncio side rather
than paho's internal retry so attempts can be counted and bounded.
"""

import asyncio
import json
import logging
import ssl
import threading
import uuid
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Literal

import paho.mqtt.client as mqtt

from filaprint.app.core.config import settings
from filaprint.app.schemas.link import LinkConfig
from filaprint.app.services.commands import CommandTranslator
from filaprint.app.services.completion import CompletionDetector
from filaprint.app.services.event_dispatch import HandlerRegistry
from filaprint.app.services.message_router import MessageRouter, device_topics, request_topic
from filaprint.app.services.telemetry_models import CompletionRecord, LiveSnapshot

logger = logging.getLogger(__name__)

LinkState = Literal["disconnected", "connecting", "connected", "reconnecting", "error"]


class PrinterLinkError(Exception):
    """Base class for printer link failures."""


class PrinterConnectionError(PrinterLinkError):
    """Session could not be established (refused, unreachable or timed out)."""


class PrinterNotConnectedError(PrinterLinkError):
    """Operation needs an active session and there is none."""


class CommandPublishError(PrinterLinkError):
    """The MQTT client rejected an outgoing command."""


@dataclass
class MQTTLogEntry:
    """Logged MQTT message."""

    timestamp: str
    topic: str
    direction: str  # "in" or "out"
    payload: dict


@dataclass(frozen=True)
class RawMessage:
    """Last inbound message exactly as received, for diagnostics."""

    timestamp: str
    topic: str
    text: str
    payload: dict | None


@dataclass(frozen=True)
class ConnectionStatus:
    connected: bool
    printer_id: str | None
    state: LinkState
    reconnect_attempts: int
    last_error: str | None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PrinterMQTTClient:
    """Connection, subscription and command channel for one printer."""

    def __init__(
        self,
        config: LinkConfig | None = None,
        detector: CompletionDetector | None = None,
        max_reconnect_attempts: int | None = None,
    ):
        self.config = config
        self.detector = detector or CompletionDetector()
        self.translator = CommandTranslator()
        self.max_reconnect_attempts = (
            max_reconnect_attempts if max_reconnect_attempts is not None else settings.mqtt_max_reconnect_attempts
        )
        self.message_handlers = HandlerRegistry("message")
        self.completion_handlers = HandlerRegistry("completion")

        self._client: mqtt.Client | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._router: MessageRouter | None = MessageRouter(config.serial_number) if config else None
        self._connected = False
        self._state: LinkState = "disconnected"
        self._last_error: str | None = None
        self._closing = False  # set by disconnect(); suppresses reconnection
        self._connect_future: asyncio.Future | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._reconnect_attempts = 0
        self._subscribed_serial: str | None = None

        # RLock: handlers run under it and may read back the latest snapshot
        self._process_lock = threading.RLock()
        self._latest_snapshot: LiveSnapshot | None = None
        self._last_raw_message: RawMessage | None = None
        self._message_log: deque[MQTTLogEntry] = deque(maxlen=settings.message_log_size)
        self._logging_enabled = False

    @property
    def serial_number(self) -> str | None:
        return self.config.serial_number if self.config else None

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def state(self) -> LinkState:
        return self._state

    # Connection lifecycle

    async def connect(self, config: LinkConfig | None = None):
        """Open the MQTT session and wait until the broker accepts it.

        Raises PrinterConnectionError when the broker refuses the session,
        the transport fails, or config.connect_timeout elapses first. On
        failure the half-open client is torn down.
        """
        if config is not None:
            self.config = config
            self._router = MessageRouter(config.serial_number)
        if self.config is None:
            raise PrinterConnectionError("No link configuration provided")

        self._closing = False
        self._cancel_reconnect()
        self._loop = asyncio.get_running_loop()
        self.message_handlers.set_event_loop(self._loop)
        self.completion_handlers.set_event_loop(self._loop)

        await self._open_session()
        self._reconnect_attempts = 0

    async def disconnect(self):
        """Close the session. Safe to call repeatedly."""
        self._closing = True
        self._cancel_reconnect()
        if self._client is not None:
            logger.info(f"[{self.serial_number}] Disconnecting")
            await asyncio.to_thread(self._teardown_client)
        self._connected = False
        self._subscribed_serial = None
        self._set_state("disconnected")

    def _create_client(self, config: LinkConfig) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"{settings.mqtt_client_id_prefix}_{config.serial_number}_{uuid.uuid4().hex[:8]}",
            protocol=mqtt.MQTTv311,
        )
        client.username_pw_set(config.username, config.password)
        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        # TLS setup - Bambu uses self-signed certs
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        client.tls_set_context(ssl_context)
        return client

    async def _open_session(self, pending_state: LinkState = "connecting", failure_state: LinkState = "error"):
        config = self.config
        if self._client is not None:
            await asyncio.to_thread(self._teardown_client)

        self._set_state(pending_state)
        future = self._loop.create_future()
        self._connect_future = future
        client = self._create_client(config)
        self._client = client

        logger.info(f"[{config.serial_number}] Connecting to {config.host}:{config.port}")
        try:
            client.connect_async(config.host, config.port, keepalive=config.keepalive)
            client.loop_start()
            await asyncio.wait_for(future, timeout=config.connect_timeout)
        except TimeoutError:
            await self._fail_session(f"Connection timed out after {config.connect_timeout}s", failure_state)
            raise PrinterConnectionError(
                f"MQTT connection to {config.host}:{config.port} timed out after {config.connect_timeout}s"
            ) from None
        except PrinterConnectionError as e:
            await self._fail_session(str(e), failure_state)
            raise
        except (OSError, ValueError) as e:
            await self._fail_session(str(e), failure_state)
            raise PrinterConnectionError(f"MQTT connection to {config.host}:{config.port} failed: {e}") from e
        finally:
            self._connect_future = None

        logger.info(f"[{config.serial_number}] MQTT connected")

    async def _fail_session(self, reason: str, state: LinkState = "error"):
        logger.error(f"[{self.serial_number}] MQTT connection failed: {reason}")
        self._connected = False
        self._last_error = reason
        self._set_state(state)
        if self._client is not None:
            await asyncio.to_thread(self._teardown_client)

    def _teardown_client(self):
        client = self._client
        self._client = None
        if client is None:
            return
        client.loop_stop()
        client.disconnect()

    def _set_state(self, state: LinkState):
        if state != self._state:
            logger.debug(f"[{self.serial_number}] Link state {self._state} -> {state}")
        self._state = state

    def _resolve_connect(self, error: Exception | None = None):
        future = self._connect_future
        loop = self._loop
        if future is None or loop is None:
            return

        def settle():
            if future.done():
                return
            if error is None:
                future.set_result(True)
            else:
                future.set_exception(error)

        try:
            loop.call_soon_threadsafe(settle)
        except RuntimeError:
            logger.debug(f"[{self.serial_number}] Event loop closed before connect result was delivered")

    # paho callbacks (network thread)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if client is not self._client:
            return
        rc = reason_code if isinstance(reason_code, int) else reason_code.value
        if rc == 0:
            self._connected = True
            self._last_error = None
            self._set_state("connected")
            self._resolve_connect()
        else:
            self._connected = False
            logger.warning(f"[{self.serial_number}] MQTT connection refused: {reason_code}")
            self._resolve_connect(PrinterConnectionError(f"MQTT connection refused: {reason_code}"))

    def _on_connect_fail(self, client, userdata):
        if client is not self._client:
            return
        self._resolve_connect(PrinterConnectionError("MQTT broker unreachable"))

    def _on_disconnect(self, client, userdata, disconnect_flags=None, reason_code=None, properties=None):
        if client is not self._client:
            return
        was_connected = self._connected
        self._connected = False
        if self._closing:
            logger.info(f"[{self.serial_number}] MQTT disconnected")
            return

        logger.warning(f"[{self.serial_number}] MQTT disconnected: rc={reason_code}, flags={disconnect_flags}")
        self._last_error = f"Connection lost (rc={reason_code})"
        # Stop paho's own retry; _reconnect_loop owns reconnection
        client.loop_stop()

        if self._connect_future is not None:
            self._resolve_connect(PrinterConnectionError(f"MQTT connection closed during handshake: {reason_code}"))
            return
        if was_connected and self._loop is not None:
            try:
                self._loop.call_soon_threadsafe(self._start_reconnect)
            except RuntimeError:
                logger.debug(f"[{self.serial_number}] Event loop closed, not reconnecting")

    def _on_message(self, client, userdata, msg):
        try:
            self.handle_message(msg.topic, msg.payload)
        except Exception as e:
            logger.error(f"[{self.serial_number}] Error processing message on {msg.topic}: {e}", exc_info=True)

    # Reconnection (event loop)

    def _start_reconnect(self):
        if self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._set_state("reconnecting")
        self._reconnect_task = self._loop.create_task(self._reconnect_loop())

    def _cancel_reconnect(self):
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _reconnect_loop(self):
        interval = self.config.reconnect_period
        while self._reconnect_attempts < self.max_reconnect_attempts:
            await asyncio.sleep(interval)
            if self._closing:
                return
            self._reconnect_attempts += 1
            logger.info(
                f"[{self.serial_number}] Attempting to reconnect "
                f"({self._reconnect_attempts}/{self.max_reconnect_attempts})"
            )
            try:
                await self._open_session("reconnecting", "reconnecting")
            except PrinterConnectionError as e:
                logger.warning(f"[{self.serial_number}] Reconnect attempt failed: {e}")
                continue

            self._reconnect_attempts = 0
            if self._subscribed_serial:
                self.subscribe_to_topics(self._subscribed_serial)
            logger.info(f"[{self.serial_number}] Reconnected")
            return

        logger.error(
            f"[{self.serial_number}] Max reconnection attempts ({self.max_reconnect_attempts}) reached, giving up"
        )
        self._last_error = "Max reconnection attempts reached"
        self._set_state("error")

    # Subscriptions and inbound traffic

    def subscribe_to_topics(self, serial_number: str | None = None) -> list[str]:
        """Subscribe to the report, status, progress and AMS topics of a device.

        A topic that fails to subscribe is logged and skipped. After at
        least one subscription succeeds a full status push is requested.
        Returns the topics that were subscribed.
        """
        client = self._client
        if client is None or not self._connected:
            raise PrinterNotConnectedError(f"Cannot subscribe: printer {self.serial_number} is not connected")

        serial = serial_number or self.serial_number
        subscribed = []
        for topic in device_topics(serial):
            try:
                result, _mid = client.subscribe(topic, qos=1)
            except ValueError as e:
                logger.error(f"[{serial}] Failed to subscribe to {topic}: {e}")
                continue
            if result != mqtt.MQTT_ERR_SUCCESS:
                logger.error(f"[{serial}] Failed to subscribe to {topic}: {mqtt.error_string(result)}")
                continue
            logger.info(f"[{serial}] Subscribed to {topic}")
            subscribed.append(topic)

        self._subscribed_serial = serial
        if subscribed:
            self._request_push_all(serial)
        return subscribed

    def handle_message(self, topic: str, raw: bytes | str) -> LiveSnapshot | None:
        """Process one inbound message and fan it out to handlers.

        Returns the snapshot delivered to message handlers, or None when the
        message was dropped (bad JSON, unknown topic, nothing recognized).
        """
        if self._router is None:
            return None
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else str(raw)

        with self._process_lock:
            routed = self._router.route(topic, raw)
            self._last_raw_message = RawMessage(
                timestamp=_now(),
                topic=topic,
                text=text,
                payload=routed.payload if routed else None,
            )
            if routed is None:
                return None
            if self._logging_enabled:
                self._message_log.append(MQTTLogEntry(
                    timestamp=_now(),
                    topic=topic,
                    direction="in",
                    payload=routed.payload,
                ))

            snapshot = routed.snapshot
            if snapshot is None:
                return None
            completion = self.detector.process(snapshot, routed.payload)
            if completion is not None:
                snapshot = replace(snapshot, completion=completion)
            self._latest_snapshot = snapshot

            self.message_handlers.dispatch(snapshot)
            if completion is not None:
                self.completion_handlers.dispatch(completion)
            return snapshot

    # Handler registration

    def on_message(self, handler_id: str, callback: Callable[[LiveSnapshot], Any]):
        self.message_handlers.register(handler_id, callback)

    def off_message(self, handler_id: str) -> bool:
        return self.message_handlers.unregister(handler_id)

    def on_completion(self, handler_id: str, callback: Callable[[CompletionRecord], Any]):
        self.completion_handlers.register(handler_id, callback)

    def off_completion(self, handler_id: str) -> bool:
        return self.completion_handlers.unregister(handler_id)

    # Commands

    def send_command(self, name: str, params: dict | None = None) -> dict:
        """Translate and publish a command. Returns the envelope that was sent.

        Raises PrinterNotConnectedError without a live session and
        CommandPublishError when paho rejects the publish.
        """
        if self._client is None or not self._connected:
            raise PrinterNotConnectedError(f"Cannot send '{name}': printer {self.serial_number} is not connected")
        envelope = self.translator.build(name, params)
        self._publish(envelope)
        logger.info(f"[{self.serial_number}] Sent command '{name}'")
        return envelope

    def request_status_update(self) -> bool:
        """Ask the printer for a full status push. False if not connected."""
        if self._client is None or not self._connected:
            return False
        return self._request_push_all(self.serial_number)

    def _request_push_all(self, serial_number: str) -> bool:
        try:
            self._publish(self.translator.push_all(), serial_number)
        except CommandPublishError as e:
            logger.warning(f"[{serial_number}] Could not request full status: {e}")
            return False
        return True

    def _publish(self, envelope: dict, serial_number: str | None = None):
        client = self._client
        if client is None:
            raise PrinterNotConnectedError(f"Printer {self.serial_number} is not connected")
        topic = request_topic(serial_number or self.serial_number)
        try:
            info = client.publish(topic, json.dumps(envelope), qos=1)
        except (ValueError, RuntimeError) as e:
            raise CommandPublishError(f"Publish to {topic} failed: {e}") from e
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error(f"[{self.serial_number}] Publish to {topic} failed: {mqtt.error_string(info.rc)}")
            raise CommandPublishError(f"Publish to {topic} failed: {mqtt.error_string(info.rc)}")

        logger.debug(f"[{self.serial_number}] MQTT command sent: {json.dumps(envelope)}")
        if self._logging_enabled:
            self._message_log.append(MQTTLogEntry(
                timestamp=_now(),
                topic=topic,
                direction="out",
                payload=envelope,
            ))

    # Diagnostics

    def get_connection_status(self) -> ConnectionStatus:
        return ConnectionStatus(
            connected=self._connected,
            printer_id=self.serial_number,
            state=self._state,
            reconnect_attempts=self._reconnect_attempts,
            last_error=self._last_error,
        )

    def get_latest_snapshot(self) -> LiveSnapshot | None:
        with self._process_lock:
            return self._latest_snapshot

    def get_last_raw_message(self) -> RawMessage | None:
        with self._process_lock:
            return self._last_raw_message

    def get_config(self) -> LinkConfig | None:
        return self.config

    def enable_logging(self, enabled: bool = True):
        """Enable or disable MQTT message logging."""
        self._logging_enabled = enabled

    def get_logs(self) -> list[MQTTLogEntry]:
        """Get all logged MQTT messages."""
        return list(self._message_log)

    def clear_logs(self):
        self._message_log.clear()

    @property
    def logging_enabled(self) -> bool:
        return self._logging_enabled
