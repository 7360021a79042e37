"""Recovers the merchant order code from free-text transfer content."""
import re
from functools import lru_cache

from reconciler.core.config import DEFAULT_ORDER_CODE_PATTERN


@lru_cache(maxsize=8)
def _compile(pattern: str) -> re.Pattern:
    return re.compile(pattern)


def extract_order_code(text: str | None, pattern: str = DEFAULT_ORDER_CODE_PATTERN) -> str | None:
    """
    First order-code-shaped token in text, uppercased. None when nothing matches.
    Banks prepend/append their own references and collapse punctuation, so the
    text is uppercased and matched token-wise rather than anchored.
    """
    if not text:
        return None
    normalized = " ".join(str(text).upper().split())
    match = _compile(pattern).search(normalized)
    return match.group(0) if match else None


def resolve_order_code(content: str | None, description: str | None, code: str | None, pattern: str = DEFAULT_ORDER_CODE_PATTERN) -> str | None:
    """
    Content first; description is only read when content is empty (a content string
    without a code does not fall through to description). Then the payload's `code` field.
    Some gateways put their own bank reference in `code`; a reference that happens
    to look like an order code can produce a false match there, which is why it
    only serves as a fallback.
    """
    from_content = extract_order_code(content or description, pattern)
    if from_content:
        return from_content
    return extract_order_code(code, pattern)
