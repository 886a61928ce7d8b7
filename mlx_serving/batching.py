# Copyright © 2023-2025 Apple Inc.

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import mlx.core as mx
import numpy as np
from mlx.utils import tree_map


@dataclass(frozen=True)
class ShapeTemplate:
    """Describes a tensor by shape and dtype without holding any data."""

    shape: Tuple[int, ...]
    dtype: mx.Dtype = mx.int32
    fill: float = 0

    @property
    def ndim(self) -> int:
        return len(self.shape)

    def matches(self, x: mx.array) -> bool:
        return tuple(x.shape) == self.shape and x.dtype == self.dtype

    def placeholder(self) -> mx.array:
        """A constant tensor of the described shape, used to warm up compiled paths."""
        return mx.full(self.shape, self.fill, dtype=self.dtype)


def template(
    shape: Sequence[int], dtype: mx.Dtype = mx.int32, fill: float = 0
) -> ShapeTemplate:
    return ShapeTemplate(tuple(int(d) for d in shape), dtype, fill)


def shape_key(inputs: Dict[str, mx.array]) -> Tuple:
    """Hashable key identifying the shapes and dtypes of a named input map."""
    return tuple(
        (name, tuple(value.shape), str(value.dtype))
        for name, value in sorted(inputs.items())
    )


class Batch(dict):
    """Named input slots sharing a leading batch dimension."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        sizes = {name: value.shape[0] for name, value in self.items()}
        if len(set(sizes.values())) > 1:
            raise ValueError(f"Batch slots disagree on the batch dimension: {sizes}")

    @property
    def size(self) -> int:
        for value in self.values():
            return value.shape[0]
        return 0

    def shape_key(self) -> Tuple:
        return shape_key(self)

    @classmethod
    def from_templates(cls, templates: Dict[str, ShapeTemplate]) -> "Batch":
        return cls({name: t.placeholder() for name, t in templates.items()})

    @classmethod
    def concatenate(cls, batches: Iterable["Batch"]) -> "Batch":
        batches = list(batches)
        if not batches:
            raise ValueError("Cannot concatenate an empty list of batches")
        names = set(batches[0])
        for b in batches[1:]:
            if set(b) != names:
                raise ValueError(
                    f"Cannot concatenate batches with different slots: "
                    f"{sorted(names)} vs {sorted(b)}"
                )
        return cls(
            {
                name: mx.concatenate([b[name] for b in batches], axis=0)
                for name in batches[0]
            }
        )

    def slice(self, start: int, stop: int) -> "Batch":
        return Batch({name: value[start:stop] for name, value in self.items()})

    def pad(self, batch_size: Optional[int]) -> "Batch":
        """Pad the batch to ``batch_size`` rows by repeating the last row.

        Repeating a real row keeps padded rows numerically well formed (e.g. a
        non-empty attention mask); the rows are dropped by ``trim`` later.
        """
        size = self.size
        if batch_size is None or size == batch_size:
            return self
        if size > batch_size:
            raise ValueError(
                f"Batch of size {size} does not fit batch_size {batch_size}"
            )
        if size == 0:
            raise ValueError("Cannot pad an empty batch")
        logging.debug("batch.pad size=%d target=%d", size, batch_size)
        extra = batch_size - size
        return Batch(
            {
                name: mx.concatenate(
                    [value, mx.repeat(value[-1:], extra, axis=0)], axis=0
                )
                for name, value in self.items()
            }
        )

    def validate(self, templates: Dict[str, ShapeTemplate]) -> None:
        """Check slot ranks against ``templates``; missing slots are allowed."""
        for name, value in self.items():
            t = templates.get(name)
            if t is not None and value.ndim != t.ndim:
                raise ValueError(
                    f"Expected input {name!r} to have rank {t.ndim}, got shape {value.shape}"
                )


def pad_sequences(
    sequences: Sequence[Sequence[int]],
    pad_value: int,
    *,
    length: Optional[int] = None,
    direction: str = "right",
    dtype: mx.Dtype = mx.int32,
) -> Tuple[mx.array, mx.array]:
    """Pad token lists into a rectangular array plus an attention mask.

    Sequences longer than ``length`` are kept whole so that the caller can
    detect (rather than silently truncate) oversized input.
    """
    if direction not in ("left", "right"):
        raise ValueError(f"Expected direction to be 'left' or 'right', got {direction!r}")
    longest = max((len(s) for s in sequences), default=0)
    width = max(longest, length or 0)
    ids = np.full((len(sequences), width), pad_value, dtype=np.int64)
    mask = np.zeros((len(sequences), width), dtype=np.int32)
    for i, seq in enumerate(sequences):
        if not len(seq):
            continue
        if direction == "right":
            ids[i, : len(seq)] = seq
            mask[i, : len(seq)] = 1
        else:
            ids[i, width - len(seq) :] = seq
            mask[i, width - len(seq) :] = 1
    return mx.array(ids).astype(dtype), mx.array(mask)


def trim(outputs: Any, size: int) -> Any:
    """Drop padded rows from every array in a (nested) output structure."""

    def _trim(x):
        if isinstance(x, mx.array) and x.ndim > 0:
            return x[:size]
        return x

    return tree_map(_trim, outputs)


def split(outputs: Any, sizes: Sequence[int]) -> List[Any]:
    """Split a batched output structure into consecutive row groups."""
    parts = []
    start = 0
    for size in sizes:
        stop = start + size

        def _slice(x, start=start, stop=stop):
            if isinstance(x, mx.array) and x.ndim > 0:
                return x[start:stop]
            return x

        parts.append(tree_map(_slice, outputs))
        start = stop
    return parts


def batch_to_list(x: mx.array) -> List[mx.array]:
    return [x[i] for i in range(x.shape[0])]
