"""Process-wide logging setup for the CLI.

Library modules only create ``logging.getLogger(__name__)`` loggers; this
module attaches handlers once at startup.
"""

import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

TEXT_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(message)s"


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging(
    level: str = "warning",
    fmt: str = "text",
    file: str | None = None,
) -> None:
    """Attach stdout (and optionally file) handlers to the ``hookchat`` logger.

    Args:
        level: Level name, e.g. ``info`` or ``DEBUG``.
        fmt: ``text`` or ``json``.
        file: Optional path of an additional log file.
    """
    formatter: logging.Formatter = (
        JsonLineFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT)
    )
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if file:
        path = Path(file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    root = logging.getLogger("hookchat")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level.upper())
    root.propagate = False
