import logging
from collections.abc import MutableMapping
from typing import Any

from koda.configs.app_configs import LOG_LEVEL

_LOG_FORMAT = "%(levelname)-8s %(asctime)s %(filename)20s:%(lineno)-4d: %(message)s"
_DATE_FORMAT = "%m/%d/%Y %I:%M:%S %p"

_handler_attached = False


def get_log_level_from_str(log_level_str: str = LOG_LEVEL) -> int:
    log_level_dict = {
        "CRITICAL": logging.CRITICAL,
        "ERROR": logging.ERROR,
        "WARNING": logging.WARNING,
        "INFO": logging.INFO,
        "DEBUG": logging.DEBUG,
        "NOTSET": logging.NOTSET,
    }

    return log_level_dict.get(log_level_str.upper(), logging.INFO)


class KodaLoggerAdapter(logging.LoggerAdapter):
    """Prefixes messages with the adapter's ``extra`` context, e.g. a node id."""

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        prefix = ""
        if self.extra:
            prefix = "".join(f"[{key}: {value}] " for key, value in self.extra.items())
        return f"{prefix}{msg}", kwargs


def _attach_root_handler(level: int) -> None:
    global _handler_attached

    if _handler_attached:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))

    root_logger = logging.getLogger("koda")
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    _handler_attached = True


def setup_logger(
    name: str = "koda",
    log_level: int | None = None,
    extra: dict[str, Any] | None = None,
) -> KodaLoggerAdapter:
    level = log_level if log_level is not None else get_log_level_from_str()
    _attach_root_handler(level)

    logger_name = name if name.startswith("koda") else f"koda.{name}"
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)

    return KodaLoggerAdapter(logger, extra=extra or {})
