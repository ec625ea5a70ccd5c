from typing import Any


def is_empty_text(text: Any) -> bool:
    """Check if the text is empty or only whitespace"""
    if not isinstance(text, str) or text.strip() == "":
        return True
    if text.lower() == "nan":
        return True
    return False


def normalize_cache_key(text: str) -> str:
    """Cache key form of a text: stripped and case-folded."""
    return text.strip().casefold()
