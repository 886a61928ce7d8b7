# Copyright © 2023-2025 Apple Inc.

from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

import mlx.core as mx

from .serving import ConfigurationError, parse_option


class Strategy(str, Enum):
    GREEDY = "greedy"
    SAMPLING = "sampling"


Sampler = Callable[[mx.array, Optional[mx.array]], mx.array]
LogitsProcessor = Callable[[mx.array, mx.array], mx.array]


def apply_top_k(logits: mx.array, top_k: int) -> mx.array:
    """Keep the ``top_k`` highest logits per row."""
    vocab_size = logits.shape[-1]
    if top_k <= 0 or top_k >= vocab_size:
        return logits
    kth = mx.sort(logits, axis=-1)[..., -top_k][..., None]
    return mx.where(logits < kth, -mx.inf, logits)


def apply_top_p(logits: mx.array, top_p: float) -> mx.array:
    """Nucleus filtering: keep the smallest prefix of tokens with mass ``top_p``."""
    if top_p >= 1.0:
        return logits
    probs = mx.softmax(logits, axis=-1)
    order = mx.argsort(-logits, axis=-1)
    sorted_probs = mx.take_along_axis(probs, order, axis=-1)
    preceding = mx.cumsum(sorted_probs, axis=-1) - sorted_probs
    keep = mx.take_along_axis(preceding < top_p, mx.argsort(order, axis=-1), axis=-1)
    return mx.where(keep, logits, -mx.inf)


def make_sampler(
    strategy: str = "greedy",
    temperature: float = 1.0,
    top_k: int = 0,
    top_p: float = 1.0,
) -> Sampler:
    """Build a token selection function ``(logits, key) -> tokens``.

    Args:
        strategy: ``"greedy"`` (argmax) or ``"sampling"``.
        temperature: Softmax temperature, sampling only.
        top_k: Restrict sampling to the ``top_k`` most likely tokens. ``0``
            disables the filter.
        top_p: Restrict sampling to the nucleus with mass ``top_p``.
    """
    strategy = parse_option(Strategy, strategy, "strategy")
    if strategy is None:
        raise ConfigurationError("strategy must not be None")
    if strategy is Strategy.GREEDY:
        return lambda logits, key=None: mx.argmax(logits, axis=-1)

    if temperature <= 0:
        raise ConfigurationError(f"temperature must be positive, got: {temperature}")
    if not 0.0 < top_p <= 1.0:
        raise ConfigurationError(f"top_p must be in (0, 1], got: {top_p}")

    def sampler(logits: mx.array, key: Optional[mx.array] = None) -> mx.array:
        logits = apply_top_k(logits / temperature, top_k)
        logits = apply_top_p(logits, top_p)
        return mx.random.categorical(logits, axis=-1, key=key)

    return sampler


def make_logits_processors(
    logit_bias: Optional[Dict[int, float]] = None,
    suppressed_token_ids: Optional[Sequence[int]] = None,
    min_length: Optional[int] = None,
    eos_token_ids: Optional[Sequence[int]] = None,
) -> List[LogitsProcessor]:
    """Processors called as ``processor(tokens, logits)`` before selection.

    ``tokens`` holds the sequences generated so far, ``(B, length)``.
    """
    processors: List[LogitsProcessor] = []
    if logit_bias:
        indices = mx.array(list(logit_bias.keys()))
        values = mx.array(list(logit_bias.values()))

        def logit_bias_processor(tokens, logits):
            logits[:, indices] += values
            return logits

        processors.append(logit_bias_processor)

    if suppressed_token_ids:
        suppressed = mx.array(list(suppressed_token_ids))

        def suppress_processor(tokens, logits):
            logits[:, suppressed] = -mx.inf
            return logits

        processors.append(suppress_processor)

    if min_length is not None and eos_token_ids:
        eos = mx.array(list(eos_token_ids))

        def min_length_processor(tokens, logits):
            if tokens.shape[1] < min_length:
                logits[:, eos] = -mx.inf
            return logits

        processors.append(min_length_processor)
    return processors
