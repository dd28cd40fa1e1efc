import logging
import re
from typing import Any


KEY_PATTERNS = [
    re.compile(r"(apikey=)([^&\s]+)", flags=re.IGNORECASE),
    re.compile(r"(X-Api-Key[:=]\s*)([A-Za-z0-9_\-]+)", flags=re.IGNORECASE),
    re.compile(r"(['\"]api_key['\"]:\s*['\"])([^'\"]+)", flags=re.IGNORECASE),
]


def redact_secrets(message: str) -> str:
    redacted = message
    for pattern in KEY_PATTERNS:
        redacted = pattern.sub(r"\1***", redacted)
    return redacted


class RedactingFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rendered = super().format(record)
        return redact_secrets(rendered)


class HuntLoggerAdapter(logging.LoggerAdapter):
    """Prefix every message with the hunt it belongs to."""

    def __init__(self, logger: logging.Logger, config_id: str, instance_name: str, hunt_type: str) -> None:
        super().__init__(
            logger,
            {"hunt_config_id": config_id, "instance_name": instance_name, "hunt_type": hunt_type},
        )

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        extra = self.extra or {}
        prefix = f"[{extra.get('hunt_config_id')} {extra.get('instance_name')} {extra.get('hunt_type')}]"
        kwargs.setdefault("extra", {}).update(extra)
        return f"{prefix} {msg}", kwargs


def setup_logging(level: str) -> None:
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(
        RedactingFormatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    )
    root.addHandler(handler)
