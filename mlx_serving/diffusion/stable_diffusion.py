# Copyright © 2023-2025 Apple Inc.

import logging
from typing import Any, Callable, Dict, List, Optional, Union

import mlx.core as mx
from tqdm import tqdm

from ..batching import Batch, template
from ..serving import (
    Compiler,
    ConfigurationError,
    InputValidationError,
    Serving,
    ServingConfig,
    normalize_output,
    validate_serving_input,
    validate_string,
)
from ..tokenizer_utils import TokenizerWrapper, apply_tokenizer
from .schedulers import Scheduler

_REQUEST_KEYS = ("prompt", "negative_prompt", "latents")


def _output(output: Any, name: str) -> mx.array:
    if isinstance(output, dict):
        return output[name]
    return output


def denormalize(images: mx.array) -> mx.array:
    """Map VAE output in ``[-1, 1]`` to ``uint8`` pixels."""
    images = mx.clip((images + 1) / 2, 0.0, 1.0)
    return (images * 255).round().astype(mx.uint8)


def guide(noise: mx.array, guidance_scale: float) -> mx.array:
    """Combine an ``[unconditional, conditional]`` prediction batch."""
    unconditional, conditional = mx.split(noise, 2, axis=0)
    return unconditional + guidance_scale * (conditional - unconditional)


def text_to_image(
    encoder: Callable,
    unet: Callable,
    vae: Callable,
    tokenizer: Any,
    scheduler: Scheduler,
    *,
    num_steps: int = 25,
    num_images_per_prompt: int = 1,
    guidance_scale: float = 7.5,
    seed: int = 0,
    height: int = 512,
    width: int = 512,
    latent_channels: int = 4,
    vae_scale_factor: int = 8,
    vae_scaling_factor: float = 0.18215,
    safety_checker: Optional[Callable] = None,
    safety_featurizer: Optional[Callable] = None,
    progress: bool = False,
    compile: Optional[Dict[str, int]] = None,
    compiler: Union[str, Compiler] = Compiler.MLX,
    shapeless: bool = False,
) -> Serving:
    """Build a text-to-image serving around a latent diffusion model.

    The collaborating models are called with named input maps and may return
    either an array or a dict:

    * ``encoder({"input_ids", "attention_mask"})`` -> ``hidden_state`` ``(B, L, D)``
    * ``unet({"sample", "timestep", "encoder_hidden_state"})`` -> ``sample``,
      the predicted noise for NHWC latents
    * ``vae({"latents"})`` -> ``sample``, NHWC images in ``[-1, 1]``
    * ``safety_featurizer(images)`` maps ``uint8`` NHWC images to the input
      map of ``safety_checker``, which returns ``is_unsafe`` ``(N,)``.

    Classifier-free guidance is used when ``guidance_scale > 1``; the
    conditional and negative prompts then share one encoder pass and one
    noise prediction per step.

    An input without ``latents`` starts from noise drawn with ``seed``, so its
    images do not depend on the other inputs batched with it.

    Returns:
        A serving accepting a prompt string, a
        ``{"prompt", "negative_prompt", "latents"}`` map, or a list of those.
        Each input maps to ``{"results": [{"image", "is_safe"}, ...]}`` with
        exactly ``num_images_per_prompt`` entries. Images flagged by the
        safety checker are replaced with black images.
    """
    config = ServingConfig.from_options(compile, compiler=compiler, shapeless=shapeless)
    if num_steps <= 0:
        raise ConfigurationError(f"num_steps must be positive, got: {num_steps}")
    if num_images_per_prompt <= 0:
        raise ConfigurationError(
            f"num_images_per_prompt must be positive, got: {num_images_per_prompt}"
        )
    if height % vae_scale_factor or width % vae_scale_factor:
        raise ConfigurationError(
            f"height and width must be divisible by vae_scale_factor {vae_scale_factor}, "
            f"got: {height}x{width}"
        )
    if (safety_checker is None) != (safety_featurizer is None):
        raise ConfigurationError(
            "safety_checker and safety_featurizer must be given together"
        )
    if progress and config.compiler is not Compiler.NONE:
        raise ConfigurationError("progress requires compiler 'none'")
    # Reject schedules the scheduler cannot produce before any request runs
    scheduler.init(num_steps)

    guided = guidance_scale > 1.0
    n = num_images_per_prompt
    latent_shape = (height // vae_scale_factor, width // vae_scale_factor, latent_channels)

    if not isinstance(tokenizer, TokenizerWrapper):
        tokenizer = TokenizerWrapper(tokenizer)

    def encode(inputs: Dict[str, mx.array]) -> mx.array:
        if guided:
            input_ids = mx.concatenate(
                [inputs["unconditional_input_ids"], inputs["conditional_input_ids"]]
            )
            attention_mask = mx.concatenate(
                [inputs["unconditional_attention_mask"], inputs["conditional_attention_mask"]]
            )
        else:
            input_ids = inputs["conditional_input_ids"]
            attention_mask = inputs["conditional_attention_mask"]
        hidden_state = _output(
            encoder({"input_ids": input_ids, "attention_mask": attention_mask}),
            "hidden_state",
        )
        # One embedding row per generated image, [unconditional, conditional]
        if guided:
            return mx.concatenate(
                [mx.repeat(h, n, axis=0) for h in mx.split(hidden_state, 2, axis=0)]
            )
        return mx.repeat(hidden_state, n, axis=0)

    def denoise(latents: mx.array, embeddings: mx.array) -> mx.array:
        state = scheduler.init(num_steps)
        latents = latents * scheduler.init_noise_sigma(state)
        steps = range(num_steps)
        if progress:
            steps = tqdm(steps, total=num_steps, desc="Denoising")
        for _ in steps:
            sample = scheduler.scale_input(state, latents)
            if guided:
                sample = mx.concatenate([sample, sample])
            timestep = mx.full((sample.shape[0],), state.timestep, dtype=mx.int32)
            noise = _output(
                unet(
                    {
                        "sample": sample,
                        "timestep": timestep,
                        "encoder_hidden_state": embeddings,
                    }
                ),
                "sample",
            )
            if guided:
                noise = guide(noise, guidance_scale)
            latents, state = scheduler.step(state, noise, latents)
            if progress:
                mx.eval(latents)
        return latents

    def execute(inputs: Dict[str, mx.array]) -> Dict[str, mx.array]:
        batch_size = inputs["conditional_input_ids"].shape[0]
        embeddings = encode(inputs)

        latents = inputs["latents"].reshape(batch_size * n, *latent_shape)
        latents = denoise(latents.astype(embeddings.dtype), embeddings)

        images = denormalize(_output(vae({"latents": latents / vae_scaling_factor}), "sample"))
        if safety_checker is not None:
            unsafe = _output(safety_checker(safety_featurizer(images)), "is_unsafe")
            unsafe = unsafe.astype(mx.bool_)
            images = mx.where(unsafe[:, None, None, None], mx.zeros_like(images), images)
        else:
            unsafe = mx.zeros((images.shape[0],), dtype=mx.bool_)

        return {
            "image": images.reshape(batch_size, n, *images.shape[1:]),
            "is_safe": mx.logical_not(unsafe).reshape(batch_size, n),
        }

    def templates(batch_size: int, sequence_length: int):
        shape = (batch_size, sequence_length)
        prefixes = ("unconditional", "conditional") if guided else ("conditional",)
        slots = {}
        for prefix in prefixes:
            slots[f"{prefix}_input_ids"] = template(shape, mx.int32)
            slots[f"{prefix}_attention_mask"] = template(shape, mx.int32, fill=1)
        slots["latents"] = template((batch_size, n, *latent_shape), mx.float32)
        return slots

    def validate_request(value: Any, field: str) -> Dict[str, Any]:
        if isinstance(value, str):
            value = {"prompt": value}
        if not isinstance(value, dict):
            raise InputValidationError(
                f"expected a string or a map with a prompt, got: {type(value).__name__}",
                field,
            )
        unknown = sorted(set(value) - set(_REQUEST_KEYS))
        if unknown:
            raise InputValidationError(
                f"unknown keys {unknown}, expected keys from {list(_REQUEST_KEYS)}", field
            )
        request = {
            "prompt": validate_string(value.get("prompt"), f"{field}.prompt"),
            "negative_prompt": validate_string(
                value.get("negative_prompt", ""), f"{field}.negative_prompt"
            ),
        }
        if value.get("latents") is not None:
            latents = mx.array(value["latents"]).astype(mx.float32)
            if tuple(latents.shape) != (n, *latent_shape):
                raise InputValidationError(
                    f"expected latents of shape {(n, *latent_shape)}, got: {latents.shape}",
                    f"{field}.latents",
                )
            request["latents"] = latents
        return request

    def preprocess(input):
        requests, multi = validate_serving_input(input, validate_request)
        prompts = [r["prompt"] for r in requests]
        if guided:
            prompts = prompts + [r["negative_prompt"] for r in requests]
        # Shared padding keeps both halves stackable in a single encoder pass
        tokens = apply_tokenizer(tokenizer, prompts, length=config.sequence_length)
        size = len(requests)
        slots = {
            "conditional_input_ids": tokens["input_ids"][:size],
            "conditional_attention_mask": tokens["attention_mask"][:size],
        }
        if guided:
            slots["unconditional_input_ids"] = tokens["input_ids"][size:]
            slots["unconditional_attention_mask"] = tokens["attention_mask"][size:]
        # Noise is drawn per input so an image does not depend on its batch
        slots["latents"] = mx.stack(
            [
                r["latents"]
                if "latents" in r
                else mx.random.normal((n, *latent_shape), key=mx.random.key(seed))
                for r in requests
            ]
        )

        logging.debug(
            "diffusion.start prompts=%d images_per_prompt=%d steps=%d guided=%s",
            size,
            n,
            num_steps,
            guided,
        )
        return Batch(slots), multi

    def postprocess(outputs, multi):
        images = outputs["image"]
        flags = outputs["is_safe"].tolist()
        hits = sum(not ok for row in flags for ok in row)
        if hits:
            logging.info("diffusion.safety flagged=%d total=%d", hits, len(flags) * n)

        results: List[Dict[str, Any]] = []
        for i, row in enumerate(flags):
            results.append(
                {
                    "results": [
                        {"image": images[i, j], "is_safe": bool(ok)}
                        for j, ok in enumerate(row)
                    ]
                }
            )
        return normalize_output(results, multi)

    return Serving(
        execute,
        preprocess=preprocess,
        postprocess=postprocess,
        config=config,
        templates=templates,
    )
