# Copyright © 2023-2025 Apple Inc.

import unittest

import mlx.core as mx

from mlx_serving.diffusion import (
    DDIMScheduler,
    EulerDiscreteScheduler,
    SchedulerConfig,
    make_scheduler,
    text_to_image,
)
from mlx_serving.diffusion.stable_diffusion import denormalize, guide
from mlx_serving.serving import ConfigurationError, InputValidationError

WORDS = ["<pad>", "a", "cat", "dog", "blurry"]


class WordTokenizer:
    pad_token_id = 0
    eos_token_id = None

    def __call__(self, texts, add_special_tokens=True, padding=False, truncation=False):
        return {"input_ids": [[WORDS.index(w) for w in text.split()] for text in texts]}


class Encoder:
    def __init__(self):
        self.batch_sizes = []

    def __call__(self, inputs):
        ids = inputs["input_ids"].astype(mx.float32)
        self.batch_sizes.append(ids.shape[0])
        return {"hidden_state": mx.stack([ids, -ids], axis=-1)}


class UNet:
    def __init__(self):
        self.batch_sizes = []

    def __call__(self, inputs):
        self.batch_sizes.append(inputs["sample"].shape[0])
        return {"sample": 0.1 * inputs["sample"]}


def vae(inputs):
    latents = inputs["latents"]
    images = mx.repeat(mx.repeat(latents[..., :3], 8, axis=1), 8, axis=2)
    return {"sample": mx.tanh(images)}


class CountingScheduler(DDIMScheduler):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.steps = 0

    def step(self, state, noise, latents):
        self.steps += 1
        return super().step(state, noise, latents)


def _serving(**kwargs):
    encoder, unet, scheduler = Encoder(), UNet(), CountingScheduler()
    options = dict(
        num_steps=2,
        height=16,
        width=16,
        compiler="none",
    )
    options.update(kwargs)
    serving = text_to_image(encoder, unet, vae, WordTokenizer(), scheduler, **options)
    return serving, encoder, unet, scheduler


class TestSchedulers(unittest.TestCase):

    def test_ddim_timesteps(self):
        scheduler = DDIMScheduler()
        state = scheduler.init(4)
        self.assertEqual(state.timesteps, (751, 501, 251, 1))
        self.assertEqual(state.timestep, 751)
        self.assertAlmostEqual(scheduler.init_noise_sigma(state), 1.0)

    def test_step_advances_immutable_state(self):
        scheduler = DDIMScheduler()
        state = scheduler.init(2)
        latents = mx.ones((1, 2, 2, 4))
        latents, next_state = scheduler.step(state, mx.zeros_like(latents), latents)
        self.assertEqual(state.index, 0)
        self.assertEqual(next_state.index, 1)
        _, last = scheduler.step(next_state, mx.zeros_like(latents), latents)
        self.assertTrue(last.done)
        with self.assertRaises(ValueError):
            scheduler.step(last, mx.zeros_like(latents), latents)

    def test_ddim_recovers_clean_sample(self):
        scheduler = DDIMScheduler()
        state = scheduler.init(1)
        alpha = float(scheduler.alphas_cumprod[state.timestep])
        clean = mx.full((1, 2, 2, 1), 0.5)
        noise = mx.full((1, 2, 2, 1), -1.0)
        noisy = alpha**0.5 * clean + (1 - alpha) ** 0.5 * noise
        # With the true noise the final step lands on the clean sample
        result, _ = scheduler.step(state, noise, noisy)
        self.assertTrue(mx.allclose(result, clean, atol=1e-4))

    def test_euler(self):
        scheduler = EulerDiscreteScheduler()
        state = scheduler.init(3)
        self.assertEqual(state.timesteps, (999, 500, 0))
        self.assertEqual(len(state.sigmas), 4)
        self.assertEqual(state.sigmas[-1], 0.0)
        self.assertGreater(scheduler.init_noise_sigma(state), 1.0)

        latents = mx.ones((1, 2, 2, 1))
        scaled = scheduler.scale_input(state, latents)
        self.assertLess(scaled.max().item(), 1.0)

        for _ in range(3):
            latents, state = scheduler.step(state, mx.zeros_like(latents), latents)
        self.assertTrue(state.done)
        # Zero predicted noise leaves the latents untouched
        self.assertTrue(mx.allclose(latents, mx.ones((1, 2, 2, 1))))

    def test_make_scheduler(self):
        self.assertIsInstance(make_scheduler("ddim"), DDIMScheduler)
        scheduler = make_scheduler("euler", beta_schedule="linear")
        self.assertIsInstance(scheduler, EulerDiscreteScheduler)
        self.assertEqual(scheduler.config.beta_schedule.value, "linear")
        with self.assertRaises(ConfigurationError) as ctx:
            make_scheduler("pndm")
        self.assertIn("'ddim'", str(ctx.exception))
        with self.assertRaises(ConfigurationError):
            SchedulerConfig(prediction_type="sample")
        with self.assertRaises(ConfigurationError):
            DDIMScheduler().init(0)


class TestTextToImage(unittest.TestCase):

    def test_single_step_without_guidance(self):
        serving, encoder, unet, scheduler = _serving(num_steps=1, guidance_scale=1.0)
        result = serving.run("a cat")

        self.assertEqual(len(unet.batch_sizes), 1)
        self.assertEqual(scheduler.steps, 1)
        self.assertEqual(encoder.batch_sizes, [1])
        self.assertEqual(len(result["results"]), 1)
        image = result["results"][0]["image"]
        self.assertEqual(image.shape, (16, 16, 3))
        self.assertEqual(image.dtype, mx.uint8)
        self.assertTrue(result["results"][0]["is_safe"])

    def test_guidance_batches_both_prompts(self):
        serving, encoder, unet, scheduler = _serving(
            num_steps=3, guidance_scale=7.5, num_images_per_prompt=2
        )
        results = serving.run(["a cat", {"prompt": "dog", "negative_prompt": "blurry"}])

        # One encoder pass for conditional and negative prompts
        self.assertEqual(encoder.batch_sizes, [4])
        # 2 prompts x 2 images x [unconditional, conditional]
        self.assertEqual(unet.batch_sizes, [8, 8, 8])
        self.assertEqual(scheduler.steps, 3)
        self.assertEqual([len(r["results"]) for r in results], [2, 2])

    def test_safety_checker_keeps_cardinality(self):
        def featurizer(images):
            return {"pixel_values": images}

        def checker(inputs):
            n = inputs["pixel_values"].shape[0]
            return {"is_unsafe": mx.arange(n) % 2 == 1}

        serving, *_ = _serving(
            num_images_per_prompt=3,
            safety_checker=checker,
            safety_featurizer=featurizer,
        )
        results = serving.run(["a cat", "a dog"])
        self.assertEqual(len(results), 2)
        flags = [[image["is_safe"] for image in r["results"]] for r in results]
        self.assertEqual(flags, [[True, False, True], [False, True, False]])
        for r in results:
            for image in r["results"]:
                self.assertEqual(image["image"].shape, (16, 16, 3))
                if not image["is_safe"]:
                    self.assertEqual(image["image"].max().item(), 0)

    def test_seeded_runs_are_deterministic(self):
        serving, *_ = _serving(seed=5)
        a = serving.run("cat")["results"][0]["image"]
        b = serving.run("cat")["results"][0]["image"]
        self.assertTrue(mx.array_equal(a, b))

        other, *_ = _serving(seed=6)
        c = other.run("cat")["results"][0]["image"]
        self.assertFalse(mx.array_equal(a, c))

    def test_caller_latents(self):
        serving, *_ = _serving(num_images_per_prompt=2)
        latents = mx.zeros((2, 2, 2, 4))
        result = serving.run({"prompt": "cat", "latents": latents})
        for image in result["results"]:
            # tanh(0) maps to mid grey
            self.assertEqual(image["image"].max().item(), 128)

        with self.assertRaises(InputValidationError):
            serving.run({"prompt": "cat", "latents": mx.zeros((1, 2, 2, 4))})
        # Inputs with and without latents share a batch
        mixed = serving.run([{"prompt": "cat", "latents": latents}, "dog"])
        self.assertEqual(mixed[0]["results"][0]["image"].max().item(), 128)
        self.assertEqual(mixed[1]["results"][0]["image"].shape, (16, 16, 3))

    def test_images_do_not_depend_on_batch(self):
        for guidance_scale in (1.0, 7.5):
            serving, *_ = _serving(seed=5, guidance_scale=guidance_scale)
            alone = serving.run("cat")["results"][0]["image"]
            batched = serving.batched_run(["dog", "cat"])[1]["results"][0]["image"]
            together = serving.run(["dog", "cat"])[1]["results"][0]["image"]
            self.assertTrue(mx.array_equal(alone, batched))
            self.assertTrue(mx.array_equal(alone, together))

    def test_compiled(self):
        serving, encoder, unet, _ = _serving(
            seed=5, compile={"batch_size": 4, "sequence_length": 3}
        )
        # Warm-up runs the padded shape: 4 prompts x [unconditional, conditional]
        self.assertEqual(encoder.batch_sizes, [8])
        self.assertEqual(unet.batch_sizes, [8, 8])
        self.assertEqual(serving.compilations, 1)

        lazy, *_ = _serving(seed=5)
        expected = lazy.run("a cat")["results"][0]["image"]
        image = serving.run("a cat")["results"][0]["image"]
        self.assertTrue(mx.array_equal(image, expected))
        self.assertEqual(encoder.batch_sizes[-1], 8)

        results = serving.run(["a cat", "dog", "cat", "a dog", {"prompt": "cat"}])
        self.assertEqual(len(results), 5)
        self.assertTrue(mx.array_equal(results[0]["results"][0]["image"], expected))
        self.assertEqual(serving.compilations, 1)

        latents = mx.zeros((1, 2, 2, 4))
        result = serving.run({"prompt": "cat", "latents": latents})
        self.assertEqual(result["results"][0]["image"].max().item(), 128)

        with self.assertRaises(ConfigurationError):
            serving.run("a cat a dog")

    def test_compiled_with_mlx(self):
        serving, *_ = _serving(
            compile={"batch_size": 2, "sequence_length": 3}, compiler="mlx"
        )
        results = serving.run(["a cat", "dog", "a dog"])
        self.assertEqual(
            [r["results"][0]["image"].shape for r in results], [(16, 16, 3)] * 3
        )
        self.assertEqual(serving.compilations, 1)

    def test_invalid_requests(self):
        serving, *_ = _serving()
        with self.assertRaises(InputValidationError):
            serving.run(3)
        with self.assertRaises(InputValidationError):
            serving.run({"text": "cat"})
        with self.assertRaises(InputValidationError):
            serving.run({"prompt": None})

    def test_invalid_options(self):
        with self.assertRaises(ConfigurationError):
            _serving(height=20)
        with self.assertRaises(ConfigurationError):
            _serving(safety_checker=lambda x: x)
        with self.assertRaises(ConfigurationError):
            _serving(progress=True, compiler="mlx")
        with self.assertRaises(ConfigurationError):
            _serving(num_images_per_prompt=0)

    def test_helpers(self):
        noise = mx.array([[1.0], [3.0]])
        self.assertEqual(guide(noise, 2.0).tolist(), [[5.0]])
        pixels = denormalize(mx.array([-1.0, 0.0, 1.0, 2.0]))
        self.assertEqual(pixels.tolist(), [0, 128, 255, 255])


if __name__ == "__main__":
    unittest.main()
