"""Secret redaction for safe logging and persisted error text.

Channel configs and gateway documents carry bot tokens, app secrets and
API keys under camelCase names. Keys are matched case-insensitively by
substring; nested dicts and lists of dicts are handled recursively.
"""

import re

# Substring patterns matched case-insensitively against dict keys
_DEFAULT_SENSITIVE_PATTERNS = frozenset({
    "secret", "token", "authorization", "apikey", "api_key", "password",
    "credential", "serviceaccountkey", "privatekey",
})

# Keys whose entire value is redacted (regardless of content type)
_CONTAINER_KEYS = frozenset({"credentials", "headers", "profiles"})

_REDACTED = "***REDACTED***"


def _is_sensitive_key(key: str, sensitive_patterns: frozenset[str]) -> bool:
    key_lower = key.lower()
    return any(pattern in key_lower for pattern in sensitive_patterns)


def redact_for_logging(
    obj: dict,
    sensitive_patterns: frozenset[str] = _DEFAULT_SENSITIVE_PATTERNS,
) -> dict:
    """Redact sensitive values from a dict for safe logging.

    Args:
        obj: Dict to redact (not mutated; a copy is returned).
        sensitive_patterns: Substring patterns whose matching keys' values
            should be replaced. Matching is case-insensitive.

    Returns:
        New dict with sensitive values replaced by '***REDACTED***'.
    """
    result = {}
    for key, value in obj.items():
        if key.lower() in _CONTAINER_KEYS or _is_sensitive_key(key, sensitive_patterns):
            result[key] = _REDACTED
        elif isinstance(value, dict):
            result[key] = redact_for_logging(value, sensitive_patterns)
        elif isinstance(value, list):
            result[key] = [
                redact_for_logging(item, sensitive_patterns) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value
    return result


_SENSITIVE_KEYWORDS = (
    r"secret|token|password|api_?key|authorization|credential"
)
_SENSITIVE_VALUE_PATTERNS = re.compile(
    r"(?i)"
    r"(?:"
    # Authorization: Bearer <token>
    r"Authorization\s*:\s*Bearer\s+\S+"
    r"|"
    # JSON-style "botToken": "value"
    r'"\w*(?:' + _SENSITIVE_KEYWORDS + r')\w*"\s*:\s*"[^"]*"'
    r"|"
    # key=value, key: value
    r"\b\w*(?:" + _SENSITIVE_KEYWORDS + r")\w*\s*[=:]\s*\S+"
    r")",
)


def sanitize_error_message(msg: str | None, max_length: int = 2000) -> str | None:
    """Sanitize an error message for safe DB persistence.

    Redacts sensitive-looking key=value pairs and truncates to max_length.
    """
    if msg is None:
        return None
    sanitized = _SENSITIVE_VALUE_PATTERNS.sub(_REDACTED, msg)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length - 3] + "..."
    return sanitized
