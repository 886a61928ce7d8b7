# Copyright © 2023-2025 Apple Inc.

from enum import Enum
from typing import Any, Dict, Optional, Union

import mlx.core as mx
import mlx.nn as nn

from .batching import batch_to_list, template
from .serving import (
    Compiler,
    ConfigurationError,
    Serving,
    ServingConfig,
    normalize_output,
    parse_option,
    validate_serving_input,
    validate_string,
)
from .tokenizer_utils import TokenizerWrapper, apply_tokenizer


class OutputPool(str, Enum):
    MEAN_POOLING = "mean_pooling"
    CLS_TOKEN_POOLING = "cls_token_pooling"


class EmbeddingProcessor(str, Enum):
    L2_NORM = "l2_norm"


def mean_pooling(hidden_state: mx.array, attention_mask: mx.array) -> mx.array:
    """Average ``hidden_state`` over the positions selected by ``attention_mask``."""
    mask = attention_mask[..., None].astype(hidden_state.dtype)
    total = (hidden_state * mask).sum(axis=1)
    count = mx.maximum(mask.sum(axis=1), 1)
    return total / count


def l2_normalize(x: mx.array, eps: float = 1e-12) -> mx.array:
    norm = mx.sqrt((x * x).sum(axis=-1, keepdims=True))
    return x / mx.maximum(norm, eps)


def text_embedding(
    model: nn.Module,
    tokenizer: Any,
    *,
    compile: Optional[Dict[str, int]] = None,
    compiler: Union[str, Compiler] = Compiler.MLX,
    shapeless: bool = False,
    output_attribute: str = "pooled_state",
    output_pool: Union[str, OutputPool, None] = None,
    embedding_processor: Union[str, EmbeddingProcessor, None] = None,
) -> Serving:
    """Build a serving that maps text to an embedding vector.

    Args:
        model: A model mapping ``input_ids``/``attention_mask`` to either an
            array or a dict of named outputs.
        tokenizer: A ``TokenizerWrapper`` or Hugging Face tokenizer.
        compile: ``{"batch_size": ..., "sequence_length": ...}`` to compile
            the model for a single shape up front.
        compiler: ``"mlx"`` (default) or ``"none"``.
        shapeless: Compile with ``mx.compile(..., shapeless=True)`` so one
            trace serves every input shape.
        output_attribute: The model output used as the embedding when the
            model returns a dict.
        output_pool: ``None``, ``"mean_pooling"`` (over non-padded positions)
            or ``"cls_token_pooling"`` (first position).
        embedding_processor: ``None`` or ``"l2_norm"``.

    Returns:
        A serving accepting a string or a list of strings. Each input maps to
        ``{"embedding": mx.array}``.
    """
    output_pool = parse_option(OutputPool, output_pool, "output_pool")
    embedding_processor = parse_option(
        EmbeddingProcessor, embedding_processor, "embedding_processor"
    )
    config = ServingConfig.from_options(compile, compiler=compiler, shapeless=shapeless)

    if not isinstance(tokenizer, TokenizerWrapper):
        tokenizer = TokenizerWrapper(tokenizer)

    def execute(inputs: Dict[str, mx.array]) -> mx.array:
        output = model(inputs)
        if isinstance(output, dict):
            if output_attribute not in output:
                raise ConfigurationError(
                    f"expected output_attribute to be one of {sorted(output)}, "
                    f"got: {output_attribute!r}"
                )
            output = output[output_attribute]

        if output_pool is OutputPool.MEAN_POOLING:
            output = mean_pooling(output, inputs["attention_mask"])
        elif output_pool is OutputPool.CLS_TOKEN_POOLING:
            output = output[:, 0]

        if embedding_processor is EmbeddingProcessor.L2_NORM:
            output = l2_normalize(output)
        return output

    def templates(batch_size: int, sequence_length: int):
        shape = (batch_size, sequence_length)
        return {
            "input_ids": template(shape, mx.int32),
            "attention_mask": template(shape, mx.int32, fill=1),
        }

    def preprocess(input):
        texts, multi = validate_serving_input(input, validate_string)
        batch = apply_tokenizer(tokenizer, texts, length=config.sequence_length)
        return batch, multi

    def postprocess(embeddings, multi):
        return normalize_output(
            [{"embedding": e} for e in batch_to_list(embeddings)], multi
        )

    return Serving(
        execute,
        preprocess=preprocess,
        postprocess=postprocess,
        config=config,
        templates=templates,
    )
