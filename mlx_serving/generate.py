# Copyright © 2023-2025 Apple Inc.

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Generator, List, Optional, Sequence, Union

import mlx.core as mx
import mlx.nn as nn

from .models.cache import DecoderCache
from .sample_utils import LogitsProcessor, Sampler, make_logits_processors, make_sampler
from .serving import ConfigurationError


@dataclass
class GenerationConfig:
    """Options controlling a single generation call.

    Either ``max_length`` (total tokens, including the decoder start token or
    prompt) or ``max_new_tokens`` bounds the output; ``max_new_tokens`` wins
    when both are set.
    """

    max_length: Optional[int] = 20
    max_new_tokens: Optional[int] = None
    min_new_tokens: Optional[int] = None
    decoder_start_token_id: Optional[int] = None
    bos_token_id: Optional[int] = None
    eos_token_id: Union[int, Sequence[int], None] = None
    pad_token_id: int = 0
    strategy: str = "greedy"
    temperature: float = 1.0
    top_k: int = 0
    top_p: float = 1.0
    seed: int = 0
    logit_bias: Optional[Dict[int, float]] = None
    suppressed_token_ids: Optional[List[int]] = None
    output_scores: bool = False
    output_hidden_states: bool = False
    output_attentions: bool = False

    def __post_init__(self):
        if self.max_new_tokens is None and self.max_length is None:
            raise ConfigurationError("one of max_length or max_new_tokens is required")
        for name in ("max_length", "max_new_tokens"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(f"{name} must be positive, got: {value}")
        if self.min_new_tokens is not None and self.min_new_tokens < 0:
            raise ConfigurationError(
                f"min_new_tokens must be non-negative, got: {self.min_new_tokens}"
            )
        # Resolve the strategy eagerly so bad names fail at configuration time
        self.sampler = make_sampler(
            self.strategy, temperature=self.temperature, top_k=self.top_k, top_p=self.top_p
        )

    @classmethod
    def from_dict(cls, params: Dict[str, Any]) -> "GenerationConfig":
        return cls(
            **{
                k: v
                for k, v in params.items()
                if k in inspect.signature(cls).parameters
            }
        )

    @property
    def eos_token_ids(self) -> List[int]:
        if self.eos_token_id is None:
            return []
        if isinstance(self.eos_token_id, int):
            return [self.eos_token_id]
        return list(self.eos_token_id)

    def resolve_max_length(self, initial_length: int) -> int:
        if self.max_new_tokens is not None:
            return initial_length + self.max_new_tokens
        return self.max_length


@dataclass
class GenerationState:
    """Mutable state of one generation call.

    ``sequences`` is preallocated to ``(B, max_length)`` and filled with the
    pad token. Rows that finished keep receiving the pad token; ``lengths``
    records where each row stopped.
    """

    sequences: mx.array
    lengths: mx.array
    finished: mx.array
    length: int
    max_length: int
    initial_length: int
    cache: Optional[DecoderCache] = None
    attention_mask: Optional[mx.array] = None
    encoder_hidden_state: Optional[mx.array] = None
    scores: Optional[mx.array] = None
    hidden_states: List[Any] = field(default_factory=list)
    attentions: List[Any] = field(default_factory=list)
    step: int = 0

    @property
    def done(self) -> bool:
        return self.length >= self.max_length or bool(mx.all(self.finished).item())


@dataclass
class GenerationOutput:
    sequences: mx.array
    lengths: mx.array
    initial_length: int
    steps: int
    scores: Optional[mx.array] = None
    hidden_states: Optional[List[Any]] = None
    attentions: Optional[List[Any]] = None

    def tolist(self) -> List[List[int]]:
        """Token ids per sequence, excluding trailing padding."""
        rows = self.sequences.tolist()
        return [row[:n] for row, n in zip(rows, self.lengths.tolist())]


def _initial_tokens(model: nn.Module, inputs: Dict[str, mx.array], config: GenerationConfig):
    """Return the initial decoder sequence and its attention mask."""
    input_ids = inputs["input_ids"]
    batch_size = input_ids.shape[0]

    if getattr(model, "is_encoder_decoder", False):
        if config.decoder_start_token_id is None:
            raise ConfigurationError(
                "decoder_start_token_id is required for encoder-decoder generation"
            )
        start = mx.full((batch_size, 1), config.decoder_start_token_id, dtype=mx.int32)
        return start, None

    tokens = input_ids.astype(mx.int32)
    mask = inputs.get("attention_mask")
    if mask is None:
        mask = mx.ones(tokens.shape, dtype=mx.int32)
    mask = mask.astype(mx.int32)

    empty = mask.sum(axis=1) == 0
    if tokens.shape[1] == 0 or bool(mx.any(empty).item()):
        start_id = config.decoder_start_token_id
        if start_id is None:
            start_id = config.bos_token_id
        if start_id is None:
            raise ConfigurationError(
                "an empty prompt requires decoder_start_token_id or bos_token_id"
            )
        if tokens.shape[1] == 0:
            tokens = mx.full((batch_size, 1), config.pad_token_id, dtype=mx.int32)
            mask = mx.zeros((batch_size, 1), dtype=mx.int32)
            empty = mx.ones((batch_size,), dtype=mx.bool_)
        # Prompts are left padded, so the start token goes in the last column
        tokens[:, -1] = mx.where(empty, start_id, tokens[:, -1])
        mask[:, -1] = mx.where(empty, 1, mask[:, -1])
    return tokens, mask


def init_state(
    model: nn.Module, inputs: Dict[str, mx.array], config: GenerationConfig
) -> GenerationState:
    initial, initial_mask = _initial_tokens(model, inputs, config)
    batch_size, initial_length = initial.shape
    max_length = config.resolve_max_length(initial_length)
    if initial_length > max_length:
        raise ConfigurationError(
            f"prompt of length {initial_length} exceeds max_length {max_length}"
        )

    sequences = mx.full((batch_size, max_length), config.pad_token_id, dtype=mx.int32)
    sequences[:, :initial_length] = initial

    attention_mask = None
    if initial_mask is not None:
        attention_mask = mx.zeros((batch_size, max_length), dtype=mx.int32)
        attention_mask[:, :initial_length] = initial_mask

    cache = None
    if hasattr(model, "init_cache"):
        cache = model.init_cache(batch_size, max_length, inputs)

    return GenerationState(
        sequences=sequences,
        lengths=mx.full((batch_size,), initial_length, dtype=mx.int32),
        finished=mx.full((batch_size,), initial_length >= max_length, dtype=mx.bool_),
        length=initial_length,
        max_length=max_length,
        initial_length=initial_length,
        cache=cache,
        attention_mask=attention_mask,
        scores=mx.zeros((batch_size, max_length), dtype=mx.float32)
        if config.output_scores
        else None,
    )


def _model_inputs(model, inputs: Dict[str, mx.array], state: GenerationState) -> Dict[str, Any]:
    # Without a cache the whole sequence is recomputed every step
    if state.cache is None or state.step == 0:
        frontier = state.sequences[:, : state.length]
    else:
        frontier = state.sequences[:, state.length - 1 : state.length]

    if getattr(model, "is_encoder_decoder", False):
        model_inputs = {
            "input_ids": inputs["input_ids"],
            "decoder_input_ids": frontier,
        }
        if "attention_mask" in inputs:
            model_inputs["attention_mask"] = inputs["attention_mask"]
        if state.encoder_hidden_state is not None:
            model_inputs["encoder_hidden_state"] = state.encoder_hidden_state
    else:
        model_inputs = {
            "input_ids": frontier,
            "attention_mask": state.attention_mask[:, : state.length],
        }
    if state.cache is not None:
        model_inputs["cache"] = state.cache
    return model_inputs


def _sample_rows(sampler: Sampler, logits: mx.array, key: mx.array) -> mx.array:
    # Every row draws with the same key, so its tokens do not depend on the
    # other rows of the batch
    return mx.concatenate(
        [sampler(logits[i : i + 1], key) for i in range(logits.shape[0])]
    )


def _optional_output(outputs: Dict[str, Any], names: Sequence[str], option: str) -> Any:
    for name in names:
        if outputs.get(name) is not None:
            return outputs[name]
    raise ConfigurationError(
        f"{option} is set but the model returned none of {list(names)}; "
        "enable the matching output in the model arguments"
    )


def generate_step(
    model: nn.Module,
    inputs: Dict[str, mx.array],
    config: GenerationConfig,
    sampler: Optional[Sampler] = None,
    logits_processors: Optional[List[LogitsProcessor]] = None,
    state: Optional[GenerationState] = None,
) -> Generator[GenerationState, None, None]:
    """Drive decoding one token at a time, yielding the state after each step.

    The model is called with a named input map and must return at least
    ``logits`` shaped ``(B, L, vocab)``; it may return an updated ``cache`` and
    ``encoder_hidden_state``. The caller may stop iterating after any step.

    Args:
        model: Single-step computation.
        inputs: ``input_ids`` and optionally ``attention_mask``. Decoder-only
            prompts must be left padded.
        config: Generation options.
        sampler: Overrides the selection strategy from ``config``.
        logits_processors: Overrides the processors derived from ``config``.
        state: A state from ``init_state`` to continue from.
    """
    if state is None:
        state = init_state(model, inputs, config)
    sampler = sampler or config.sampler
    if logits_processors is None:
        min_length = None
        if config.min_new_tokens is not None:
            min_length = state.initial_length + config.min_new_tokens
        logits_processors = make_logits_processors(
            logit_bias=config.logit_bias,
            suppressed_token_ids=config.suppressed_token_ids,
            min_length=min_length,
            eos_token_ids=config.eos_token_ids,
        )
    eos = mx.array(config.eos_token_ids or [-1], dtype=mx.int32)
    key = mx.random.key(config.seed)
    encoder_decoder = getattr(model, "is_encoder_decoder", False)

    while not state.done:
        outputs = model(_model_inputs(model, inputs, state))
        state.cache = outputs.get("cache", state.cache)
        if encoder_decoder and state.cache is not None:
            state.encoder_hidden_state = outputs.get("encoder_hidden_state")

        logits = outputs["logits"][:, -1, :]
        tokens = state.sequences[:, : state.length]
        for processor in logits_processors:
            logits = processor(tokens, logits)

        key, subkey = mx.random.split(key)
        next_token = _sample_rows(sampler, logits, subkey).astype(mx.int32)
        next_token = mx.where(state.finished, config.pad_token_id, next_token)

        position = state.length
        state.sequences[:, position] = next_token
        if state.attention_mask is not None:
            state.attention_mask[:, position] = 1
        if state.scores is not None:
            logprobs = logits - mx.logsumexp(logits, axis=-1, keepdims=True)
            picked = mx.take_along_axis(logprobs, next_token[:, None], axis=-1)[:, 0]
            state.scores[:, position] = mx.where(state.finished, 0.0, picked)
        if config.output_hidden_states:
            state.hidden_states.append(
                _optional_output(
                    outputs,
                    ("decoder_hidden_states", "hidden_states"),
                    "output_hidden_states",
                )
            )
        if config.output_attentions:
            state.attentions.append(
                _optional_output(
                    outputs, ("decoder_attentions", "attentions"), "output_attentions"
                )
            )

        state.length += 1
        state.step += 1
        is_eos = (next_token[:, None] == eos[None]).any(axis=1)
        stop = is_eos | (state.length >= state.max_length)
        state.lengths = mx.where(state.finished, state.lengths, state.length)
        state.finished = state.finished | stop
        mx.eval(state.sequences, state.lengths, state.finished)
        yield state

    logging.debug(
        "generate.done steps=%d length=%d max_length=%d",
        state.step,
        state.length,
        state.max_length,
    )


def generate(
    model: nn.Module,
    inputs: Dict[str, mx.array],
    config: Optional[GenerationConfig] = None,
    **kwargs,
) -> GenerationOutput:
    """Run generation to completion.

    Extra keyword arguments are forwarded to ``generate_step``.
    """
    config = config or GenerationConfig()
    state = init_state(model, inputs, config)
    for _ in generate_step(model, inputs, config, state=state, **kwargs):
        pass

    return GenerationOutput(
        sequences=state.sequences,
        lengths=state.lengths,
        initial_length=state.initial_length,
        steps=state.step,
        scores=state.scores,
        hidden_states=state.hidden_states if config.output_hidden_states else None,
        attentions=state.attentions if config.output_attentions else None,
    )
