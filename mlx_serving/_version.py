# Copyright © 2023-2025 Apple Inc.

__version__ = "0.4.0"
