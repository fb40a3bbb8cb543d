import logging
from typing import Awaitable, Callable

from filaprint.app.schemas.link import LinkConfig
from filaprint.app.services.live_data import LiveDataStore
from filaprint.app.services.printer_mqtt import (
    ConnectionStatus,
    MQTTLogEntry,
    PrinterConnectionError,
    PrinterMQTTClient,
    PrinterNotConnectedError,
)
from filaprint.app.services.telemetry_models import CompletionRecord, LiveSnapshot

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[str, LiveSnapshot], Awaitable[None]]
CompletionCallback = Callable[[str, CompletionRecord], Awaitable[None]]

MANAGER_HANDLER_ID = "printer_manager"


class PrinterManager:
    """Manager for multiple printer connections."""

    def __init__(self, live_data: LiveDataStore | None = None):
        self._clients: dict[str, PrinterMQTTClient] = {}
        self._on_snapshot: SnapshotCallback | None = None
        self._on_completion: CompletionCallback | None = None
        self.live_data = live_data or LiveDataStore()

    def set_snapshot_callback(self, callback: SnapshotCallback):
        """Set callback for every normalized snapshot."""
        self._on_snapshot = callback

    def set_completion_callback(self, callback: CompletionCallback):
        """Set callback for print completion events."""
        self._on_completion = callback

    def _create_client(self, config: LinkConfig) -> PrinterMQTTClient:
        return PrinterMQTTClient(config)

    async def connect_printer(self, config: LinkConfig) -> bool:
        """Connect to a printer and subscribe to its telemetry.

        An existing link for the same printer is replaced. Returns False if
        the session could not be established.
        """
        printer_id = config.serial_number
        if printer_id in self._clients:
            await self.disconnect_printer(printer_id)

        def on_snapshot(snapshot: LiveSnapshot):
            # Stored inline; only the callback goes through the bounded async path
            self.live_data.store(snapshot)
            if self._on_snapshot:
                return self._on_snapshot(printer_id, snapshot)
            return None

        async def on_completion(record: CompletionRecord):
            if self._on_completion:
                await self._on_completion(printer_id, record)

        client = self._create_client(config)
        client.on_message(MANAGER_HANDLER_ID, on_snapshot)
        client.on_completion(MANAGER_HANDLER_ID, on_completion)

        try:
            await client.connect()
            client.subscribe_to_topics()
        except (PrinterConnectionError, PrinterNotConnectedError) as e:
            logger.error(f"[{printer_id}] Could not connect printer: {e}")
            await client.disconnect()
            return False

        self._clients[printer_id] = client
        return True

    async def disconnect_printer(self, printer_id: str):
        """Disconnect from a printer."""
        client = self._clients.pop(printer_id, None)
        if client is not None:
            await client.disconnect()

    async def disconnect_all(self):
        """Disconnect from all printers."""
        for printer_id in list(self._clients.keys()):
            await self.disconnect_printer(printer_id)

    def get_status(self, printer_id: str) -> LiveSnapshot | None:
        """Get the latest snapshot of a printer."""
        if printer_id in self._clients:
            return self._clients[printer_id].get_latest_snapshot()
        return None

    def get_all_statuses(self) -> dict[str, LiveSnapshot | None]:
        return {
            printer_id: client.get_latest_snapshot()
            for printer_id, client in self._clients.items()
        }

    def get_connection_status(self, printer_id: str) -> ConnectionStatus | None:
        if printer_id in self._clients:
            return self._clients[printer_id].get_connection_status()
        return None

    def is_connected(self, printer_id: str) -> bool:
        """Check if a printer is connected."""
        if printer_id in self._clients:
            return self._clients[printer_id].is_connected
        return False

    def get_client(self, printer_id: str) -> PrinterMQTTClient | None:
        """Get the MQTT client for a printer."""
        return self._clients.get(printer_id)

    def send_command(self, printer_id: str, name: str, params: dict | None = None) -> dict:
        """Send a command to a managed printer. Returns the published envelope."""
        client = self._clients.get(printer_id)
        if client is None:
            raise PrinterNotConnectedError(f"Printer {printer_id} is not managed")
        return client.send_command(name, params)

    def request_status_update(self, printer_id: str) -> bool:
        """Request a full status push from the printer."""
        if printer_id in self._clients:
            return self._clients[printer_id].request_status_update()
        return False

    def enable_logging(self, printer_id: str, enabled: bool = True) -> bool:
        """Enable or disable MQTT logging for a printer."""
        if printer_id in self._clients:
            self._clients[printer_id].enable_logging(enabled)
            return True
        return False

    def get_logs(self, printer_id: str) -> list[MQTTLogEntry]:
        if printer_id in self._clients:
            return self._clients[printer_id].get_logs()
        return []

    def clear_logs(self, printer_id: str) -> bool:
        if printer_id in self._clients:
            self._clients[printer_id].clear_logs()
            return True
        return False

    async def test_connection(self, config: LinkConfig) -> dict:
        """Test connection to a printer without keeping the link."""
        client = self._create_client(config)
        try:
            await client.connect()
            return {"success": True, "error": None}
        except PrinterConnectionError as e:
            return {"success": False, "error": str(e)}
        finally:
            await client.disconnect()


# Global printer manager instance
printer_manager = PrinterManager()
