from __future__ import annotations

import collections
import logging
from typing import List

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_HANDLER_NAME = "bluebridge-console"
_RECENT_HANDLER_NAME = "bluebridge-recent"
RECENT_LOG_LINES = 1000


class RecentLogHandler(logging.Handler):
    """Keeps the last ``capacity`` formatted records for the ``get-logs`` event."""

    def __init__(self, capacity: int = RECENT_LOG_LINES) -> None:
        super().__init__()
        self._lines: collections.deque[str] = collections.deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._lines.append(self.format(record))
        except Exception:
            self.handleError(record)

    def tail(self, count: int) -> List[str]:
        if count <= 0:
            return []
        return list(self._lines)[-count:]


def _named_handler(root: logging.Logger, name: str) -> logging.Handler | None:
    for handler in root.handlers:
        if handler.get_name() == name:
            return handler
    return None


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Install the console and recent-lines handlers on the root logger once and set its level."""

    root = logging.getLogger()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)

    if _named_handler(root, _HANDLER_NAME) is not None:
        return root

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(formatter)
    root.addHandler(handler)
    recent = RecentLogHandler()
    recent.set_name(_RECENT_HANDLER_NAME)
    recent.setFormatter(formatter)
    root.addHandler(recent)
    # aiohttp logs every request at INFO.
    logging.getLogger("aiohttp.access").setLevel(max(level, logging.WARNING))
    return root


def recent_log_lines(count: int = 100) -> List[str]:
    """Last ``count`` log lines; empty when :func:`configure_logging` never ran."""

    handler = _named_handler(logging.getLogger(), _RECENT_HANDLER_NAME)
    if not isinstance(handler, RecentLogHandler):
        return []
    return handler.tail(count)
