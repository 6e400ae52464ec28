"""Token estimation utilities.

Budget decisions use :func:`estimate_tokens`, a deterministic heuristic over the
text alone. :func:`count_tokens` is for telemetry and uses tiktoken when it is
installed.
"""

import math
from typing import Optional

_tiktoken_available = False
_encoder_cache = {}

try:
    import tiktoken
    _tiktoken_available = True
except ImportError:
    pass

# Code-heavy text tokenises denser than prose.
CODE_CHARS_PER_TOKEN = 3
TEXT_CHARS_PER_TOKEN = 4
SAFETY_MARGIN_PERCENT = 10


def _looks_like_code(text: str) -> bool:
    return "{" in text or "```" in text or "fn " in text


def estimate_tokens(text: str) -> int:
    """Estimate token count for text.

    ``ceil(len / 3)`` for code-like text, ``ceil(len / 4)`` otherwise, then a
    10% safety margin rounded up.
    """
    if not text:
        return 0
    divisor = CODE_CHARS_PER_TOKEN if _looks_like_code(text) else TEXT_CHARS_PER_TOKEN
    base = math.ceil(len(text) / divisor)
    # ceil(base * 1.1) in integers
    return -(-base * (100 + SAFETY_MARGIN_PERCENT) // 100)


def _get_encoder(model: str):
    """Get tiktoken encoder for model, with caching."""
    if not _tiktoken_available:
        return None

    if model in _encoder_cache:
        return _encoder_cache[model]

    try:
        enc = tiktoken.encoding_for_model(model)
    except KeyError:
        enc = tiktoken.get_encoding("cl100k_base")

    _encoder_cache[model] = enc
    return enc


def count_tokens(text: str, model: Optional[str] = None) -> int:
    """Count tokens with tiktoken when possible, else fall back to the estimate."""
    if not text:
        return 0

    if _tiktoken_available and model:
        # litellm-style names carry a provider prefix
        enc = _get_encoder(model.split("/")[-1])
        if enc:
            try:
                return len(enc.encode(text))
            except Exception:
                pass

    return estimate_tokens(text)
