"""
Logs JSON structurés — une ligne par événement, schéma stable
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any

# Champs structurés acceptés via `extra=` et toujours présents dans la sortie
EVENT_FIELDS = (
    "event",
    "import_id",
    "cooperative_id",
    "user_id",
    "feature_index",
    "error_code",
    "duration_ms",
)


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in EVENT_FIELDS:
            value = getattr(record, field, None)
            payload[field] = str(value) if value is not None and field.endswith("_id") else value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure le logger racine du package (idempotent)."""
    logger = logging.getLogger("cocoatrack")
    logger.setLevel(level.upper())
    logger.handlers.clear()

    stream = logging.StreamHandler()
    if json_output:
        stream.setFormatter(JsonLineFormatter())
    else:
        stream.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s — %(message)s"))
    logger.addHandler(stream)


def log_event(logger: logging.Logger, message: str, level: int = logging.INFO, **event_fields: Any) -> None:
    logger.log(level, message, extra=event_fields)
