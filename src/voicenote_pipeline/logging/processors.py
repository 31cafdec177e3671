"""Structlog processors for pipeline services."""

from typing import Any

_SENSITIVE_KEYS = frozenset(
    {
        "api_key",
        "apikey",
        "authorization",
        "openai_api_key",
        "anthropic_api_key",
        "assemblyai_api_key",
        "password",
        "redis_password",
        "secret",
        "token",
    }
)


def censor_sensitive_data(logger: Any, method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Redact values for keys that look like secrets."""
    for key in event_dict:
        if key.lower() in _SENSITIVE_KEYS:
            event_dict[key] = "***REDACTED***"
    return event_dict


def add_process_fields(**fields: Any) -> Any:
    """Return a processor that adds ``fields`` to every event without overriding its own keys."""

    def processor(logger: Any, method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        for key, value in fields.items():
            event_dict.setdefault(key, value)
        return event_dict

    return processor
