# Copyright © 2023-2025 Apple Inc.

import unittest

import mlx.core as mx

from mlx_serving.models.cache import DecoderCache, traverse_cache


def _make_cache(batch_size=2, max_length=4, encoder_sequence_length=3):
    return DecoderCache.init(
        batch_size,
        max_length,
        num_blocks=2,
        num_attention_heads=2,
        attention_head_size=3,
        encoder_sequence_length=encoder_sequence_length,
    )


class TestDecoderCache(unittest.TestCase):

    def test_init_shapes(self):
        cache = _make_cache()
        self.assertEqual(len(cache), 2)
        self.assertEqual(cache.offset, 0)
        self.assertEqual(cache.batch_size, 2)
        self.assertEqual(cache[0].keys.shape, (2, 2, 4, 3))
        self.assertEqual(cache[0].cross_keys.shape, (2, 2, 3, 3))
        self.assertEqual(len(cache.state), 8)

        without_cross = _make_cache(encoder_sequence_length=None)
        self.assertIsNone(without_cross[0].cross_keys)
        self.assertEqual(len(without_cross.state), 4)

    def test_update_and_fetch_writes_at_offset(self):
        cache = _make_cache()
        first = mx.ones((2, 2, 1, 3))
        keys, values = cache.update_and_fetch(0, first, first * 2)
        self.assertEqual(keys.shape, (2, 2, 4, 3))
        cache.advance(1)

        keys, values = cache.update_and_fetch(0, first * 3, first * 4)
        cache.advance(1)
        self.assertEqual(keys[0, 0, :, 0].tolist(), [1.0, 3.0, 0.0, 0.0])
        self.assertEqual(values[0, 0, :, 0].tolist(), [2.0, 4.0, 0.0, 0.0])
        self.assertEqual(cache.offset, 2)

    def test_offset_bounds(self):
        cache = _make_cache(max_length=2)
        cache.advance(2)
        with self.assertRaises(ValueError):
            cache.advance(1)
        with self.assertRaises(ValueError):
            cache.advance(-1)
        with self.assertRaises(ValueError):
            cache.update_and_fetch(0, mx.ones((2, 2, 1, 3)), mx.ones((2, 2, 1, 3)))

    def test_cross_attention_written_once(self):
        cache = _make_cache()
        self.assertFalse(cache.cross_attention_ready(1))
        keys = mx.ones((2, 2, 3, 3))
        cache.update_cross_attention(1, keys, keys)
        self.assertTrue(cache.cross_attention_ready(1))
        self.assertFalse(cache.cross_attention_ready(0))
        fetched, _ = cache.fetch_cross_attention(1)
        self.assertTrue(mx.array_equal(fetched, keys))

        with self.assertRaises(ValueError):
            cache.update_cross_attention(0, mx.ones((2, 2, 5, 3)), mx.ones((2, 2, 5, 3)))

    def test_traverse_identity(self):
        cache = _make_cache()
        cache.update_cross_attention(0, mx.ones((2, 2, 3, 3)), mx.ones((2, 2, 3, 3)))
        cache.advance(1)

        copy = traverse_cache(cache, lambda x: x)
        self.assertEqual(copy.offset, cache.offset)
        self.assertEqual(copy.max_length, cache.max_length)
        self.assertEqual(len(copy), len(cache))
        self.assertTrue(copy.cross_attention_ready(0))
        for a, b in zip(copy.state, cache.state):
            self.assertEqual(a.shape, b.shape)
            self.assertTrue(mx.array_equal(a, b))

    def test_reorder(self):
        cache = _make_cache()
        rows = mx.arange(2, dtype=mx.float32).reshape(2, 1, 1, 1)
        cache.update_and_fetch(0, mx.broadcast_to(rows, (2, 2, 1, 3)), mx.zeros((2, 2, 1, 3)))
        reordered = cache.reorder(mx.array([1, 0]))
        self.assertEqual(reordered[0].keys[:, 0, 0, 0].tolist(), [1.0, 0.0])

    def test_astype(self):
        cache = _make_cache().astype(mx.float16)
        self.assertTrue(all(x.dtype == mx.float16 for x in cache.state))


if __name__ == "__main__":
    unittest.main()
