import logging
import sys

from kubevirt_actuator.config import get_settings


_HANDLER_MARKER = "_kubevirt_actuator_handler"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    resolved = logging.getLevelName((level or get_settings().log_level).upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    root_logger = logging.getLogger()
    handler = next(
        (h for h in root_logger.handlers if getattr(h, _HANDLER_MARKER, False)),
        None,
    )
    if handler is None:
        handler = logging.StreamHandler(sys.stdout)
        setattr(handler, _HANDLER_MARKER, True)
        root_logger.addHandler(handler)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.setLevel(resolved)
    root_logger.setLevel(resolved)

    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
