from typing import Any, Dict, Mapping

import bleach


def sanitize_text(value: str) -> str:
    """Return a sanitized version of *value* with HTML stripped.

    This removes any HTML tags to mitigate XSS attacks.
    """
    return bleach.clean(value, tags=[], attributes={}, strip=True)


def sanitize_mapping(values: Mapping[str, Any]) -> Dict[str, Any]:
    """Strip HTML from every string value of a flat mapping such as a quick note."""
    cleaned: Dict[str, Any] = {}
    for key, value in values.items():
        cleaned[key] = sanitize_text(value) if isinstance(value, str) else value
    return cleaned
