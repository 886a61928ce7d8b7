# Copyright © 2023-2025 Apple Inc.

from dataclasses import dataclass, replace
from typing import Callable, List, Optional

import mlx.core as mx


@dataclass
class LayerCache:
    """Key/value buffers of a single decoder block.

    Self-attention buffers are shaped ``(B, n_heads, max_length, head_dim)``.
    Cross-attention buffers, when present, are shaped
    ``(B, n_encoder_heads, encoder_length, head_dim)`` and are written once
    per generation call.
    """

    keys: mx.array
    values: mx.array
    cross_keys: Optional[mx.array] = None
    cross_values: Optional[mx.array] = None
    cross_ready: bool = False


class DecoderCache:
    """Preallocated key/value cache for autoregressive decoding.

    The buffers are sized for ``max_length`` positions up front and never
    resized. ``offset`` counts the positions written so far; it only moves
    forward and never exceeds ``max_length``.
    """

    def __init__(self, layers: List[LayerCache], max_length: int, offset: int = 0):
        self.layers = layers
        self.max_length = max_length
        self._offset = offset

    @classmethod
    def init(
        cls,
        batch_size: int,
        max_length: int,
        *,
        num_blocks: int,
        num_attention_heads: int,
        attention_head_size: int,
        encoder_num_attention_heads: Optional[int] = None,
        encoder_sequence_length: Optional[int] = None,
        dtype: mx.Dtype = mx.float32,
    ) -> "DecoderCache":
        if max_length <= 0:
            raise ValueError(f"max_length must be positive, got {max_length}")
        shape = (batch_size, num_attention_heads, max_length, attention_head_size)
        layers = []
        for _ in range(num_blocks):
            layer = LayerCache(
                keys=mx.zeros(shape, dtype=dtype),
                values=mx.zeros(shape, dtype=dtype),
            )
            if encoder_sequence_length is not None:
                cross_shape = (
                    batch_size,
                    encoder_num_attention_heads or num_attention_heads,
                    encoder_sequence_length,
                    attention_head_size,
                )
                layer.cross_keys = mx.zeros(cross_shape, dtype=dtype)
                layer.cross_values = mx.zeros(cross_shape, dtype=dtype)
            layers.append(layer)
        return cls(layers, max_length)

    def __len__(self) -> int:
        return len(self.layers)

    def __getitem__(self, idx: int) -> LayerCache:
        return self.layers[idx]

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def batch_size(self) -> int:
        return self.layers[0].keys.shape[0] if self.layers else 0

    @property
    def state(self) -> List[mx.array]:
        arrays = []
        for layer in self.layers:
            arrays.extend([layer.keys, layer.values])
            if layer.cross_keys is not None:
                arrays.extend([layer.cross_keys, layer.cross_values])
        return arrays

    def update_and_fetch(self, layer: int, keys: mx.array, values: mx.array):
        """Write ``keys``/``values`` at the current offset of ``layer``.

        Returns the full buffers; positions past ``offset + length`` hold
        zeros and must be masked by the caller.
        """
        end = self._offset + keys.shape[2]
        if end > self.max_length:
            raise ValueError(
                f"Cache write of {keys.shape[2]} positions at offset {self._offset} "
                f"exceeds max_length {self.max_length}"
            )
        entry = self.layers[layer]
        entry.keys[..., self._offset : end, :] = keys
        entry.values[..., self._offset : end, :] = values
        return entry.keys, entry.values

    def cross_attention_ready(self, layer: int) -> bool:
        return self.layers[layer].cross_ready

    def update_cross_attention(self, layer: int, keys: mx.array, values: mx.array):
        entry = self.layers[layer]
        if entry.cross_keys is None:
            raise ValueError("Cache was initialized without a cross-attention region")
        if keys.shape != entry.cross_keys.shape:
            raise ValueError(
                f"Expected cross-attention keys of shape {entry.cross_keys.shape}, "
                f"got {keys.shape}"
            )
        entry.cross_keys = keys.astype(entry.cross_keys.dtype)
        entry.cross_values = values.astype(entry.cross_values.dtype)
        entry.cross_ready = True
        return entry.cross_keys, entry.cross_values

    def fetch_cross_attention(self, layer: int):
        entry = self.layers[layer]
        return entry.cross_keys, entry.cross_values

    def advance(self, n: int) -> None:
        if n < 0:
            raise ValueError("Cache offset cannot move backwards")
        if self._offset + n > self.max_length:
            raise ValueError(
                f"Cache offset {self._offset + n} exceeds max_length {self.max_length}"
            )
        self._offset += n

    def traverse(self, fn: Callable[[mx.array], mx.array]) -> "DecoderCache":
        """Apply ``fn`` to every cached tensor, keeping layout and offset."""
        layers = []
        for layer in self.layers:
            layers.append(
                replace(
                    layer,
                    keys=fn(layer.keys),
                    values=fn(layer.values),
                    cross_keys=None if layer.cross_keys is None else fn(layer.cross_keys),
                    cross_values=None
                    if layer.cross_values is None
                    else fn(layer.cross_values),
                )
            )
        return DecoderCache(layers, self.max_length, self._offset)

    def reorder(self, indices: mx.array) -> "DecoderCache":
        """Select batch rows, e.g. to follow surviving beams."""
        return self.traverse(lambda x: mx.take(x, indices, axis=0))

    def astype(self, dtype: mx.Dtype) -> "DecoderCache":
        return self.traverse(lambda x: x.astype(dtype))


def traverse_cache(cache: DecoderCache, fn: Callable[[mx.array], mx.array]) -> DecoderCache:
    return cache.traverse(fn)
