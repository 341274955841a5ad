import logging
import sys
from pathlib import Path

from shipment_service.core.request_context import get_request_id


class RequestIdFilter(logging.Filter):
    """Stamp every record with the current correlation id ("-" outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = get_request_id() or "-"
        return True


def setup_logging(log_level: str = "INFO", log_file: str = None):
    """
    Configure application logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path of a log file
    """
    log_format = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    request_filter = RequestIdFilter()
    handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(request_id)s | %(message)s",
        datefmt=date_format,
    ))
    console_handler.addFilter(request_filter)
    handlers.append(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(fmt=log_format, datefmt=date_format))
        file_handler.addFilter(request_filter)
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured: level={log_level}")
    if log_file:
        logger.info(f"Writing logs to: {log_file}")
