"""Recover a JSON object from free-text model output."""

import json
import logging
import re

logger = logging.getLogger(__name__)

# Longer input is refused outright; scanning it is not worth the cost.
MAX_EXTRACT_LENGTH = 1_000_000

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def _loads_object(text: str) -> dict | None:
    try:
        value = json.loads(text)
    except (ValueError, RecursionError):
        # Deeply nested arrays blow the decoder's stack before the size cap kicks in.
        return None
    return value if isinstance(value, dict) else None


def extract_json(text: str) -> dict | None:
    """Best-effort decode of a JSON object embedded in a model reply.

    Tries, in order: the whole trimmed text, the first fenced code block, and
    the span from the first ``{`` to the last ``}``. Returns None when nothing
    decodes to an object; callers treat that as "ask again", not as an error.
    """
    if len(text) > MAX_EXTRACT_LENGTH:
        logger.warning("Refusing to extract JSON from %d characters of input", len(text))
        return None

    parsed = _loads_object(text.strip())
    if parsed is not None:
        return parsed

    fence = _FENCE_RE.search(text)
    if fence:
        parsed = _loads_object(fence.group(1).strip())
        if parsed is not None:
            return parsed

    first = text.find("{")
    last = text.rfind("}")
    if first != -1 and last > first:
        return _loads_object(text[first:last + 1])

    return None
