"""
Credential scrubbing for anything that leaves the process.

Error messages and metadata reach logs, execution rows, notifications and API
responses. All of those go through here first.
"""

import re
from typing import Any, Optional

REDACTED = "[redacted]"
URL_REDACTED = "[url redacted]"
MAX_MESSAGE_LENGTH = 500
MAX_META_STRING_LENGTH = 500

_URL = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)
_BEARER = re.compile(r"\bBearer\s+[^\s\"',;]+", re.IGNORECASE)
_API_KEY = re.compile(r"\b(?:sk|pk|rk|whsec)[-_][A-Za-z0-9_\-]+")
_ASSIGNED_SECRET = re.compile(
    r"\b(token|api[_-]?key|secret|password|passwd|access[_-]?key)\s*=\s*[^&\s\"',;]+",
    re.IGNORECASE,
)
_JSON_SECRET = re.compile(
    r"\"(key|token|secret|password|api[_-]?key|authorization)\"\s*:\s*\"[^\"]*\"",
    re.IGNORECASE,
)
_SECRET_KEY_NAME = re.compile(
    r"(secret|password|passwd|token|api[_-]?key|authorization|cookie|"
    r"webhook[_-]?url|config[_-]?json|credential)",
    re.IGNORECASE,
)


def scrub(text: str) -> str:
    """Replace credential-like substrings. Does not truncate."""
    text = _URL.sub(URL_REDACTED, text)
    text = _BEARER.sub(REDACTED, text)
    text = _JSON_SECRET.sub(lambda m: f'"{m.group(1)}":"{REDACTED}"', text)
    text = _ASSIGNED_SECRET.sub(lambda m: f"{m.group(1)}={REDACTED}", text)
    text = _API_KEY.sub(REDACTED, text)
    return text


def sanitize_error_message(err: Any) -> str:
    """Turn an exception (or anything) into a short, credential-free message."""
    if err is None:
        return "Unknown error"
    if isinstance(err, BaseException):
        message = str(err) or err.__class__.__name__
    else:
        message = str(err)
    message = scrub(message)
    if len(message) > MAX_MESSAGE_LENGTH:
        message = message[: MAX_MESSAGE_LENGTH - 1] + "…"
    return message


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(k): (REDACTED if _SECRET_KEY_NAME.search(str(k)) else _sanitize_value(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(v) for v in value]
    if isinstance(value, str):
        value = scrub(value)
        if len(value) > MAX_META_STRING_LENGTH:
            return value[:MAX_META_STRING_LENGTH] + "…"
        return value
    return value


def sanitize_meta(meta: Any) -> Optional[dict]:
    """Redact secret-named keys and scrub string values, recursively."""
    if meta is None:
        return None
    if not isinstance(meta, dict):
        return {"value": _sanitize_value(str(meta))}
    return _sanitize_value(meta)
