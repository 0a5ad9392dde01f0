from __future__ import annotations

import math

# Rough average for English text across Claude / Titan tokenizers
CHARS_PER_TOKEN = 4.0


def estimate_tokens(text: str | None) -> int:
    """Approximate the token count of ``text``.

    Not a tokenizer: ``ceil(len(text) / 4)``, zero for empty or missing text.
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
