"""Approximate token counting per model family."""

from __future__ import annotations

from functools import lru_cache

import tiktoken

from kbchat.metrics.observability import get_logger

FALLBACK_MODEL = "gpt-4"

_logger = get_logger("tokens")


@lru_cache(maxsize=32)
def _encoding_for(model_family: str) -> tiktoken.Encoding:
    return tiktoken.encoding_for_model(model_family)


class TokenCounter:
    """Counts tokens with the model's tokenizer, falling back to the gpt-4 encoding.

    ``count_tokens`` never raises: when neither tokenizer can be loaded it
    returns ``0``.
    """

    def __init__(self, fallback_model: str = FALLBACK_MODEL) -> None:
        self._fallback_model = fallback_model

    def count_tokens(self, text: str, model_family: str) -> int:
        if not text:
            return 0
        try:
            return len(_encoding_for(model_family).encode(text, disallowed_special=()))
        except Exception:
            pass
        try:
            return len(_encoding_for(self._fallback_model).encode(text, disallowed_special=()))
        except Exception as exc:
            _logger.error("tokens.count_failed", model_family=model_family, error=str(exc))
            return 0


_default_counter = TokenCounter()


def count_tokens(text: str, model_family: str) -> int:
    return _default_counter.count_tokens(text, model_family)
