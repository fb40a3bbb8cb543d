"""Routing of inbound printer MQTT messages to the telemetry normalizer."""

import json
import logging
from dataclasses import dataclass

from filaprint.app.services.telemetry import TelemetryNormalizer
from filaprint.app.services.telemetry_models import LiveSnapshot, TopicClass

logger = logging.getLogger(__name__)

TOPIC_CLASSES: tuple[TopicClass, ...] = ("report", "status", "progress", "ams")


def device_topics(serial_number: str) -> list[str]:
    """Topics subscribed per printer."""
    return [f"device/{serial_number}/{suffix}" for suffix in TOPIC_CLASSES]


def request_topic(serial_number: str) -> str:
    return f"device/{serial_number}/request"


def printer_id_from_topic(topic: str) -> str | None:
    parts = topic.split("/")
    if len(parts) >= 3 and parts[0] == "device" and parts[1]:
        return parts[1]
    return None


def topic_class(topic: str) -> TopicClass | None:
    suffix = topic.rstrip("/").rsplit("/", 1)[-1]
    if suffix in TOPIC_CLASSES:
        return suffix
    return None


@dataclass(frozen=True)
class RoutedMessage:
    topic: str
    topic_class: TopicClass
    payload: dict
    snapshot: LiveSnapshot | None


class MessageRouter:
    """Decodes a raw MQTT payload and hands it to the parser for its topic class.

    Never raises for bad input: a malformed message is logged and dropped so
    the rest of the stream keeps flowing.
    """

    def __init__(self, printer_id: str, normalizer: TelemetryNormalizer | None = None):
        self.printer_id = printer_id
        self.normalizer = normalizer or TelemetryNormalizer()

    def decode(self, topic: str, raw: bytes | str) -> dict | None:
        try:
            text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
            payload = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError, TypeError) as e:
            logger.debug(f"[{self.printer_id}] Dropping unparseable message on {topic}: {e}")
            return None
        if not isinstance(payload, dict):
            logger.debug(f"[{self.printer_id}] Dropping non-object message on {topic}: {type(payload).__name__}")
            return None
        return payload

    def route(self, topic: str, raw: bytes | str) -> RoutedMessage | None:
        klass = topic_class(topic)
        if klass is None:
            logger.debug(f"[{self.printer_id}] Ignoring message on unrouted topic {topic}")
            return None
        payload = self.decode(topic, raw)
        if payload is None:
            return None
        try:
            printer_id = printer_id_from_topic(topic) or self.printer_id
            snapshot = self.normalizer.normalize(payload, klass, printer_id)
        except Exception as e:
            logger.debug(f"[{self.printer_id}] Failed to normalize {klass} message: {e}", exc_info=True)
            snapshot = None
        return RoutedMessage(topic=topic, topic_class=klass, payload=payload, snapshot=snapshot)
