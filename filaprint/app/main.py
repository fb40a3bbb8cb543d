import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler

from pydantic import ValidationError

# Import settings first for logging configuration
from filaprint.app.core.config import settings as app_settings, APP_VERSION
from filaprint.app.schemas.link import LinkConfig
from filaprint.app.services.printer_manager import printer_manager
from filaprint.app.services.telemetry_models import CompletionRecord, LiveSnapshot

LOG_FORMAT = '%(asctime)s %(levelname)s [%(name)s] %(message)s'


def configure_logging():
    """Install console and (optionally) rotating file handlers on the root logger."""
    # DEBUG=true -> DEBUG level, else use LOG_LEVEL setting
    log_level_str = "DEBUG" if app_settings.debug else app_settings.log_level.upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Console handler - always enabled
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(console_handler)

    if app_settings.log_to_file:
        app_settings.log_dir.mkdir(parents=True, exist_ok=True)
        log_file = app_settings.log_dir / "filaprint.log"
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=5*1024*1024,  # 5MB
            backupCount=3,
            encoding='utf-8'
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(file_handler)
        logging.info(f"Logging to file: {log_file}")

    # Reduce noise from third-party libraries in production
    if not app_settings.debug:
        logging.getLogger("paho").setLevel(logging.WARNING)

    logging.info(f"{app_settings.app_name} {APP_VERSION} starting - debug={app_settings.debug}, log_level={log_level_str}")


async def on_snapshot(printer_id: str, snapshot: LiveSnapshot):
    logging.getLogger(__name__).info(
        f"[{printer_id}] {snapshot.topic_class}: status={snapshot.status.status}, "
        f"progress={snapshot.progress.percentage}%, "
        f"nozzles={snapshot.temperatures.nozzle_left}/{snapshot.temperatures.nozzle_right}, "
        f"bed={snapshot.temperatures.bed}"
    )


async def on_print_complete(printer_id: str, record: CompletionRecord):
    logging.getLogger(__name__).info(
        f"[{printer_id}] Print {record.outcome}: file={record.filename}, "
        f"layers={record.layers_completed}/{record.total_layers}, duration={record.duration}s"
    )


def link_config_from_settings() -> LinkConfig:
    """Link configuration for the single printer named in the environment."""
    return LinkConfig(
        host=app_settings.printer_host or "",
        serial_number=app_settings.printer_serial or "",
        password=app_settings.printer_access_code or "",
    )


async def run(config: LinkConfig):
    """Stream telemetry from one printer until cancelled."""
    logger = logging.getLogger(__name__)
    printer_manager.set_snapshot_callback(on_snapshot)
    printer_manager.set_completion_callback(on_print_complete)

    if not await printer_manager.connect_printer(config):
        logger.error(f"[{config.serial_number}] Unable to connect to {config.host}")
        return 1

    try:
        await asyncio.Event().wait()
    finally:
        await printer_manager.disconnect_all()
    return 0


def main() -> int:
    configure_logging()
    try:
        config = link_config_from_settings()
    except ValidationError as e:
        logging.error(f"Set PRINTER_HOST, PRINTER_SERIAL and PRINTER_ACCESS_CODE: {e}")
        return 2
    try:
        return asyncio.run(run(config))
    except KeyboardInterrupt:
        logging.info("Shutting down")
        return 0


if __name__ == "__main__":
    sys.exit(main())
