# Copyright © 2023-2025 Apple Inc.

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import mlx.core as mx
import mlx.nn as nn

from ..batching import ShapeTemplate, template
from ..serving import ConfigurationError
from .base import BaseModelArgs, create_causal_mask, mask_to_bias, padding_mask
from .cache import DecoderCache

ARCHITECTURES = ("base", "for_conditional_generation", "encoder")

_ACTIVATIONS = {
    "relu": nn.relu,
    "gelu": nn.gelu,
    "gelu_new": nn.gelu_approx,
    "silu": nn.silu,
}


@dataclass
class ModelArgs(BaseModelArgs):
    model_type: str = "t5"
    architecture: str = "for_conditional_generation"
    vocab_size: int = 32128
    d_model: int = 512
    d_kv: int = 64
    d_ff: int = 2048
    num_layers: int = 6
    num_decoder_layers: Optional[int] = None
    num_heads: int = 8
    relative_attention_num_buckets: int = 32
    relative_attention_max_distance: int = 128
    layer_norm_epsilon: float = 1e-6
    feed_forward_proj: str = "relu"
    tie_word_embeddings: bool = True
    decoder_start_token_id: int = 0
    pad_token_id: int = 0
    eos_token_id: int = 1
    output_hidden_states: bool = False
    output_attentions: bool = False

    def __post_init__(self):
        if self.num_decoder_layers is None:
            self.num_decoder_layers = self.num_layers
        if self.architecture not in ARCHITECTURES:
            raise ConfigurationError(
                f"expected architecture to be one of {list(ARCHITECTURES)}, "
                f"got: {self.architecture!r}"
            )
        parts = self.feed_forward_proj.split("-")
        valid_prefix = len(parts) == 1 or (len(parts) == 2 and parts[0] == "gated")
        if not valid_prefix or self.dense_act_fn not in _ACTIVATIONS:
            raise ConfigurationError(
                f"unsupported feed_forward_proj {self.feed_forward_proj!r}, expected "
                f"an activation from {sorted(_ACTIVATIONS)} optionally prefixed with 'gated-'"
            )

    @property
    def is_gated_act(self) -> bool:
        return self.feed_forward_proj.startswith("gated-")

    @property
    def dense_act_fn(self) -> str:
        # HF configs spell the gated variant "gated-gelu" but mean the tanh approximation
        if self.feed_forward_proj == "gated-gelu":
            return "gelu_new"
        return self.feed_forward_proj.split("-")[-1]


def _relative_position_bucket(
    relative_position: mx.array,
    bidirectional: bool = True,
    num_buckets: int = 32,
    max_distance: int = 128,
):
    buckets = mx.zeros(relative_position.shape, dtype=mx.int32)
    if bidirectional:
        num_buckets //= 2
        buckets = buckets + (relative_position > 0).astype(mx.int32) * num_buckets
        relative_position = mx.abs(relative_position)
    else:
        relative_position = -mx.minimum(relative_position, 0)

    # Half the buckets are exact offsets, the rest grow logarithmically
    max_exact = num_buckets // 2
    is_small = relative_position < max_exact
    scaled = (
        mx.log(mx.maximum(relative_position, 1).astype(mx.float32) / max_exact)
        / math.log(max_distance / max_exact)
        * (num_buckets - max_exact)
    )
    if_large = mx.minimum(max_exact + scaled.astype(mx.int32), num_buckets - 1)
    return buckets + mx.where(is_small, relative_position, if_large)


class Attention(nn.Module):
    def __init__(self, args: ModelArgs, has_relative_attention_bias: bool, bidirectional: bool):
        super().__init__()
        inner_dim = args.num_heads * args.d_kv
        self.n_heads = args.num_heads
        self.d_kv = args.d_kv
        self.bidirectional = bidirectional
        self.num_buckets = args.relative_attention_num_buckets
        self.max_distance = args.relative_attention_max_distance

        self.q = nn.Linear(args.d_model, inner_dim, bias=False)
        self.k = nn.Linear(args.d_model, inner_dim, bias=False)
        self.v = nn.Linear(args.d_model, inner_dim, bias=False)
        self.o = nn.Linear(inner_dim, args.d_model, bias=False)
        if has_relative_attention_bias:
            self.relative_attention_bias = nn.Embedding(self.num_buckets, self.n_heads)

    def compute_bias(self, query_length: int, key_length: int, offset: int = 0):
        context = mx.arange(offset, offset + query_length)[:, None]
        memory = mx.arange(key_length)[None]
        buckets = _relative_position_bucket(
            memory - context,
            bidirectional=self.bidirectional,
            num_buckets=self.num_buckets,
            max_distance=self.max_distance,
        )
        values = self.relative_attention_bias(buckets)
        return values.transpose(2, 0, 1)[None].astype(mx.float32)

    def heads(self, x: mx.array) -> mx.array:
        B, L, _ = x.shape
        return x.reshape(B, L, self.n_heads, self.d_kv).transpose(0, 2, 1, 3)

    def attend(self, queries, keys, values, bias):
        B, _, L, _ = queries.shape
        # T5 folds the 1/sqrt(d) scaling into the initialization
        scores = (queries @ keys.transpose(0, 1, 3, 2)).astype(mx.float32) + bias
        weights = mx.softmax(scores, axis=-1).astype(queries.dtype)
        output = (weights @ values).transpose(0, 2, 1, 3).reshape(B, L, -1)
        return self.o(output), weights


class SelfAttentionLayer(nn.Module):
    def __init__(self, args: ModelArgs, has_relative_attention_bias: bool, bidirectional: bool):
        super().__init__()
        self.SelfAttention = Attention(args, has_relative_attention_bias, bidirectional)
        self.layer_norm = nn.RMSNorm(args.d_model, eps=args.layer_norm_epsilon)


class CrossAttentionLayer(nn.Module):
    def __init__(self, args: ModelArgs):
        super().__init__()
        self.EncDecAttention = Attention(args, False, True)
        self.layer_norm = nn.RMSNorm(args.d_model, eps=args.layer_norm_epsilon)


class DenseActDense(nn.Module):
    def __init__(self, args: ModelArgs):
        super().__init__()
        self.wi = nn.Linear(args.d_model, args.d_ff, bias=False)
        self.wo = nn.Linear(args.d_ff, args.d_model, bias=False)
        self.act = _ACTIVATIONS[args.dense_act_fn]

    def __call__(self, x):
        return self.wo(self.act(self.wi(x)))


class DenseGatedActDense(nn.Module):
    def __init__(self, args: ModelArgs):
        super().__init__()
        self.wi_0 = nn.Linear(args.d_model, args.d_ff, bias=False)
        self.wi_1 = nn.Linear(args.d_model, args.d_ff, bias=False)
        self.wo = nn.Linear(args.d_ff, args.d_model, bias=False)
        self.act = _ACTIVATIONS[args.dense_act_fn]

    def __call__(self, x):
        return self.wo(self.act(self.wi_0(x)) * self.wi_1(x))


class FeedForwardLayer(nn.Module):
    def __init__(self, args: ModelArgs):
        super().__init__()
        if args.is_gated_act:
            self.DenseReluDense = DenseGatedActDense(args)
        else:
            self.DenseReluDense = DenseActDense(args)
        self.layer_norm = nn.RMSNorm(args.d_model, eps=args.layer_norm_epsilon)

    def __call__(self, x):
        return x + self.DenseReluDense(self.layer_norm(x))


class EncoderBlock(nn.Module):
    def __init__(self, args: ModelArgs, has_relative_attention_bias: bool):
        super().__init__()
        self.layer = [
            SelfAttentionLayer(args, has_relative_attention_bias, bidirectional=True),
            FeedForwardLayer(args),
        ]

    def __call__(self, x, bias):
        sa = self.layer[0]
        attn = sa.SelfAttention
        y = sa.layer_norm(x)
        out, weights = attn.attend(attn.heads(attn.q(y)), attn.heads(attn.k(y)), attn.heads(attn.v(y)), bias)
        x = x + out
        return self.layer[1](x), weights


class DecoderBlock(nn.Module):
    def __init__(self, args: ModelArgs, has_relative_attention_bias: bool):
        super().__init__()
        self.layer = [
            SelfAttentionLayer(args, has_relative_attention_bias, bidirectional=False),
            CrossAttentionLayer(args),
            FeedForwardLayer(args),
        ]

    def __call__(self, x, self_bias, encoder_hidden_state, cross_bias, cache, index):
        sa = self.layer[0]
        attn = sa.SelfAttention
        y = sa.layer_norm(x)
        queries = attn.heads(attn.q(y))
        keys = attn.heads(attn.k(y))
        values = attn.heads(attn.v(y))
        if cache is not None:
            keys, values = cache.update_and_fetch(index, keys, values)
        out, self_weights = attn.attend(queries, keys, values, self_bias)
        x = x + out

        ca = self.layer[1]
        attn = ca.EncDecAttention
        y = ca.layer_norm(x)
        queries = attn.heads(attn.q(y))
        if cache is not None and cache.cross_attention_ready(index):
            keys, values = cache.fetch_cross_attention(index)
        else:
            keys = attn.heads(attn.k(encoder_hidden_state))
            values = attn.heads(attn.v(encoder_hidden_state))
            if cache is not None:
                keys, values = cache.update_cross_attention(index, keys, values)
        out, cross_weights = attn.attend(queries, keys, values, cross_bias)
        x = x + out

        return self.layer[2](x), self_weights, cross_weights


class Encoder(nn.Module):
    def __init__(self, args: ModelArgs):
        super().__init__()
        self.args = args
        self.block = [EncoderBlock(args, i == 0) for i in range(args.num_layers)]
        self.final_layer_norm = nn.RMSNorm(args.d_model, eps=args.layer_norm_epsilon)

    def __call__(self, x, attention_mask=None):
        L = x.shape[1]
        bias = self.block[0].layer[0].SelfAttention.compute_bias(L, L)
        if attention_mask is not None:
            bias = bias + mask_to_bias(padding_mask(attention_mask))

        hidden_states: List[mx.array] = []
        attentions: List[mx.array] = []
        for block in self.block:
            hidden_states.append(x)
            x, weights = block(x, bias)
            attentions.append(weights)
        x = self.final_layer_norm(x)
        hidden_states.append(x)
        return x, hidden_states, attentions


class Decoder(nn.Module):
    def __init__(self, args: ModelArgs):
        super().__init__()
        self.args = args
        self.block = [DecoderBlock(args, i == 0) for i in range(args.num_decoder_layers)]
        self.final_layer_norm = nn.RMSNorm(args.d_model, eps=args.layer_norm_epsilon)

    def __call__(
        self,
        x,
        encoder_hidden_state,
        attention_mask=None,
        encoder_attention_mask=None,
        cache: Optional[DecoderCache] = None,
    ):
        L = x.shape[1]
        offset = cache.offset if cache is not None else 0
        total = cache.max_length if cache is not None else L

        mask = create_causal_mask(L, offset, total)[None, None]
        if attention_mask is not None and attention_mask.shape[1] == total:
            mask = mask & padding_mask(attention_mask)
        self_bias = self.block[0].layer[0].SelfAttention.compute_bias(L, total, offset)
        self_bias = self_bias + mask_to_bias(mask)

        if encoder_attention_mask is not None:
            cross_bias = mask_to_bias(padding_mask(encoder_attention_mask))
        else:
            cross_bias = mx.array(0.0)

        hidden_states: List[mx.array] = []
        attentions: List[mx.array] = []
        cross_attentions: List[mx.array] = []
        for i, block in enumerate(self.block):
            hidden_states.append(x)
            x, self_weights, cross_weights = block(
                x, self_bias, encoder_hidden_state, cross_bias, cache, i
            )
            attentions.append(self_weights)
            cross_attentions.append(cross_weights)
        x = self.final_layer_norm(x)
        hidden_states.append(x)

        if cache is not None:
            cache.advance(L)
        return x, hidden_states, attentions, cross_attentions


def shift_tokens_right(input_ids: mx.array, start_token_id: int) -> mx.array:
    start = mx.full((input_ids.shape[0], 1), start_token_id, dtype=input_ids.dtype)
    return mx.concatenate([start, input_ids[:, :-1]], axis=1)


class Model(nn.Module):
    """T5 with the architectures ``base``, ``for_conditional_generation`` and ``encoder``.

    The model consumes and produces named maps. Decoder inputs default to
    ``input_ids`` shifted right behind ``decoder_start_token_id``. Passing
    ``encoder_hidden_state`` skips the encoder; passing ``cache`` enables
    incremental decoding.
    """

    def __init__(self, args: ModelArgs):
        super().__init__()
        self.args = args
        self.model_type = args.model_type
        self.shared = nn.Embedding(args.vocab_size, args.d_model)
        self.encoder = Encoder(args)
        if args.architecture != "encoder":
            self.decoder = Decoder(args)
        if args.architecture == "for_conditional_generation" and not args.tie_word_embeddings:
            self.lm_head = nn.Linear(args.d_model, args.vocab_size, bias=False)

    @property
    def is_encoder_decoder(self) -> bool:
        return self.args.architecture != "encoder"

    @property
    def dtype(self) -> mx.Dtype:
        return self.shared.weight.dtype

    def input_template(self) -> Dict[str, ShapeTemplate]:
        return {"input_ids": template((1, 1), mx.int32)}

    def init_cache(self, batch_size: int, max_length: int, inputs: Dict[str, mx.array]) -> DecoderCache:
        if "encoder_hidden_state" in inputs:
            encoder_length = inputs["encoder_hidden_state"].shape[1]
        else:
            encoder_length = inputs["input_ids"].shape[1]
        cache = DecoderCache.init(
            batch_size,
            max_length,
            num_blocks=self.args.num_decoder_layers,
            num_attention_heads=self.args.num_heads,
            attention_head_size=self.args.d_kv,
            encoder_num_attention_heads=self.args.num_heads,
            encoder_sequence_length=encoder_length,
        )
        return cache.astype(self.dtype)

    def encode(self, inputs: Dict[str, mx.array]) -> Dict[str, Any]:
        if "input_embeddings" in inputs:
            x = inputs["input_embeddings"]
        else:
            x = self.shared(inputs["input_ids"])
        hidden_state, hidden_states, attentions = self.encoder(x, inputs.get("attention_mask"))
        outputs = {"hidden_state": hidden_state}
        if self.args.output_hidden_states:
            outputs["hidden_states"] = hidden_states
        if self.args.output_attentions:
            outputs["attentions"] = attentions
        return outputs

    def __call__(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        if self.args.architecture == "encoder":
            return self.encode(inputs)

        outputs: Dict[str, Any] = {}
        encoder_hidden_state = inputs.get("encoder_hidden_state")
        if encoder_hidden_state is None:
            encoded = self.encode(inputs)
            encoder_hidden_state = encoded["hidden_state"]
            if self.args.output_hidden_states:
                outputs["encoder_hidden_states"] = encoded["hidden_states"]
            if self.args.output_attentions:
                outputs["encoder_attentions"] = encoded["attentions"]

        decoder_input_ids = inputs.get("decoder_input_ids")
        if decoder_input_ids is None:
            decoder_input_ids = shift_tokens_right(
                inputs["input_ids"], self.args.decoder_start_token_id
            )
        cache = inputs.get("cache")
        hidden_state, hidden_states, attentions, cross_attentions = self.decoder(
            self.shared(decoder_input_ids),
            encoder_hidden_state,
            attention_mask=inputs.get("decoder_attention_mask"),
            encoder_attention_mask=inputs.get("attention_mask"),
            cache=cache,
        )

        outputs["encoder_hidden_state"] = encoder_hidden_state
        if self.args.architecture == "for_conditional_generation":
            if self.args.tie_word_embeddings:
                # Rescale before projecting onto the shared vocabulary embedding
                outputs["logits"] = self.shared.as_linear(hidden_state * self.args.d_model**-0.5)
            else:
                outputs["logits"] = self.lm_head(hidden_state)
        else:
            outputs["hidden_state"] = hidden_state
        if cache is not None:
            outputs["cache"] = cache
        if self.args.output_hidden_states:
            outputs["decoder_hidden_states"] = hidden_states
        if self.args.output_attentions:
            outputs["decoder_attentions"] = attentions
            outputs["cross_attentions"] = cross_attentions
        return outputs
