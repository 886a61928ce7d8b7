# Copyright © 2023-2025 Apple Inc.

from dataclasses import replace
from typing import Any, Dict, Optional, Union

import mlx.core as mx
import mlx.nn as nn

from .batching import template
from .generate import GenerationConfig, generate
from .serving import (
    Compiler,
    ConfigurationError,
    Serving,
    ServingConfig,
    normalize_output,
    validate_serving_input,
    validate_string,
)
from .tokenizer_utils import TokenizerWrapper, apply_tokenizer


def text_generation(
    model: nn.Module,
    tokenizer: Any,
    generation_config: Optional[GenerationConfig] = None,
    *,
    compile: Optional[Dict[str, int]] = None,
    compiler: Union[str, Compiler] = Compiler.NONE,
) -> Serving:
    """Build a serving that maps prompts to generated text.

    Args:
        model: A model returning ``logits`` from a named input map. Encoder-decoder
            models set ``is_encoder_decoder``.
        tokenizer: A ``TokenizerWrapper`` or Hugging Face tokenizer.
        generation_config: Decoding options; the tokenizer's special tokens
            fill in missing ids.
        compile: ``{"batch_size": ..., "sequence_length": ...}`` to fix the
            execution shape ahead of time.
        compiler: Only ``"none"``; decoding inspects finished flags on the host
            every step, so the loop cannot be traced as a single graph.

    Returns:
        A serving accepting a string or a list of strings. Each input maps to
        ``{"text": str, "token_summary": {...}}`` plus ``"scores"`` when
        ``output_scores`` is enabled.
    """
    config = ServingConfig.from_options(compile, compiler=compiler)
    if config.compiler is not Compiler.NONE:
        raise ConfigurationError(
            f"text generation supports compiler 'none' only, got: {config.compiler.value!r}"
        )

    encoder_decoder = getattr(model, "is_encoder_decoder", False)
    if not isinstance(tokenizer, TokenizerWrapper):
        tokenizer = TokenizerWrapper(
            tokenizer, pad_direction="right" if encoder_decoder else "left"
        )
    generation_config = generation_config or GenerationConfig()
    overrides = {"pad_token_id": tokenizer.pad_token_id}
    if generation_config.eos_token_id is None and tokenizer.eos_token_ids:
        overrides["eos_token_id"] = sorted(tokenizer.eos_token_ids)
    if encoder_decoder and generation_config.decoder_start_token_id is None:
        overrides["decoder_start_token_id"] = getattr(
            getattr(model, "args", None), "decoder_start_token_id", tokenizer.pad_token_id
        )
    generation_config = replace(generation_config, **overrides)

    def execute(inputs: Dict[str, mx.array]) -> Dict[str, mx.array]:
        output = generate(model, inputs, generation_config)
        batch_size = output.sequences.shape[0]
        result = {
            "sequences": output.sequences,
            "lengths": output.lengths,
            "initial_length": mx.full((batch_size,), output.initial_length, dtype=mx.int32),
            "input_length": inputs["attention_mask"].sum(axis=1),
        }
        if output.scores is not None:
            result["scores"] = output.scores
        return result

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

    def postprocess(outputs, multi):
        sequences = outputs["sequences"].tolist()
        lengths = outputs["lengths"].tolist()
        starts = outputs["initial_length"].tolist()
        input_lengths = outputs["input_length"].tolist()
        scores = outputs["scores"].tolist() if "scores" in outputs else None

        results = []
        for i, (row, start, stop) in enumerate(zip(sequences, starts, lengths)):
            token_ids = row[start:stop]
            result = {
                "text": tokenizer.decode(token_ids),
                "token_summary": {"input": input_lengths[i], "output": len(token_ids)},
            }
            if scores is not None:
                result["scores"] = scores[i][start:stop]
            results.append(result)
        return normalize_output(results, multi)

    return Serving(
        execute,
        preprocess=preprocess,
        postprocess=postprocess,
        config=config,
        templates=templates,
    )
