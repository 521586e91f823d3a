import json
import logging
import sys
from datetime import datetime, timezone

from billsync.core.config import settings

_RESERVED = set(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line; anything passed through ``extra=`` is kept."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(level: str = None) -> None:
    root = logging.getLogger()
    if getattr(root, "_billsync_configured", False):
        return

    handler = logging.StreamHandler(sys.stdout)
    if settings.LOG_JSON:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
        )

    root.handlers = [handler]
    root.setLevel((level or settings.LOG_LEVEL).upper())
    # Request logs from the HTTP client are noisy at INFO
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    root._billsync_configured = True
