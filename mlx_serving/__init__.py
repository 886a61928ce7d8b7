# Copyright © 2023-2025 Apple Inc.

import os

from ._version import __version__

os.environ["TRANSFORMERS_NO_ADVISORY_WARNINGS"] = "1"

from .batching import Batch, ShapeTemplate, template
from .diffusion import text_to_image
from .generate import GenerationConfig, GenerationOutput, generate, generate_step
from .serving import (
    Compiler,
    ConfigurationError,
    ExecutionError,
    InputValidationError,
    Serving,
    ServingConfig,
)
from .text_embedding import text_embedding
from .text_generation import text_generation
from .tokenizer_utils import TokenizerWrapper, load_tokenizer
