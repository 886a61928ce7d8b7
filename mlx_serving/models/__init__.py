# Copyright © 2023-2025 Apple Inc.

from .cache import DecoderCache, LayerCache, traverse_cache
