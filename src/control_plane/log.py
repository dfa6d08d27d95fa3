"""Logging setup.

Every module logs through a named ``control-plane.<area>`` logger; this
configures the root handler once at startup.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from control_plane.config import Settings

_DEV_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shipping in production."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


_configured = False


def configure_logging(settings: Settings | None = None) -> None:
    """Install a stdout handler on the root logger.

    Args:
        settings: Settings to read level and environment from.
    """
    global _configured
    if _configured:
        return

    settings = settings or Settings.from_env()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JSONFormatter() if settings.is_production else logging.Formatter(_DEV_FORMAT)
    )

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.log_level, logging.INFO))

    # SQL echo is far too noisy outside debugging
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True
