"""
Chat Sync Core - Text Utilities
Normalization of outgoing text, phone identifiers and template variables.
"""

import re
from typing import Optional, Dict

# WhatsApp text body limit
MAX_TEXT_LENGTH = 4096

_VARIABLE_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")


def sanitize_text(text: Optional[str], max_length: int = MAX_TEXT_LENGTH) -> str:
    """
    Clean user-typed text before it is stored or sent.

    Escaping for display is the rendering layer's job; this only strips
    what the provider would reject.

    Args:
        text: The input text
        max_length: Maximum allowed length

    Returns:
        Cleaned text ("" for None)
    """
    if not text:
        return ""

    # Remove any null bytes
    text = text.replace('\x00', '')

    # Normalize line endings
    text = text.replace('\r\n', '\n').replace('\r', '\n')

    text = text.strip()

    if len(text) > max_length:
        text = text[:max_length]

    return text


def normalize_phone(phone: Optional[str]) -> str:
    """Phone numbers compare equal regardless of embedded whitespace"""
    if not phone:
        return ""
    return re.sub(r"\s+", "", str(phone))


def replace_variables(text: str, variables: Dict[str, Optional[str]]) -> str:
    """
    Replace {{key}} placeholders in text.

    Unknown keys are left untouched so a template typo stays visible.

    Args:
        text: Text containing {{key}} placeholders
        variables: Mapping of placeholder key to value

    Returns:
        Text with known placeholders substituted
    """
    if not text:
        return text

    def _substitute(match: re.Match) -> str:
        key = match.group(1)
        if key not in variables:
            return match.group(0)
        return variables[key] or ""

    return _VARIABLE_PATTERN.sub(_substitute, text)


def truncate(text: str, max_length: int, suffix: str = "...") -> str:
    """Cut text to max_length characters, appending suffix when cut"""
    if len(text) > max_length:
        return text[:max_length] + suffix
    return text
