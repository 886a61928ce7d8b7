# Copyright © 2023-2025 Apple Inc.

import inspect
from dataclasses import dataclass
from typing import Optional

import mlx.core as mx


@dataclass
class BaseModelArgs:
    @classmethod
    def from_dict(cls, params):
        return cls(
            **{
                k: v
                for k, v in params.items()
                if k in inspect.signature(cls).parameters
            }
        )


def create_causal_mask(N: int, offset: int = 0, total: Optional[int] = None):
    """Boolean ``(N, total)`` mask; query ``i`` sits at position ``offset + i``.

    ``total`` defaults to ``offset + N``. Keys beyond the query position are
    masked, which also hides unwritten slots of a preallocated cache.
    """
    total = offset + N if total is None else total
    linds = mx.arange(offset, offset + N)[:, None]
    rinds = mx.arange(total)[None]
    return linds >= rinds


def padding_mask(attention_mask: mx.array):
    """Turn a ``(B, T)`` 0/1 mask into a broadcastable ``(B, 1, 1, T)`` boolean mask."""
    return (attention_mask != 0)[:, None, None, :]


def mask_to_bias(mask: mx.array, dtype: mx.Dtype = mx.float32):
    """Additive bias: 0 where ``mask`` is true, a large negative value elsewhere."""
    neg = mx.array(mx.finfo(dtype).min, dtype=dtype)
    return mx.where(mask, mx.array(0.0, dtype=dtype), neg)
