# Copyright © 2023-2025 Apple Inc.

import unittest

import mlx.core as mx

from mlx_serving.generate import GenerationConfig
from mlx_serving.serving import ConfigurationError, InputValidationError
from mlx_serving.text_generation import text_generation
from mlx_serving.tokenizer_utils import TokenizerWrapper

WORDS = ["<pad>", "</s>", "a", "b", "c", "five", "six", "seven"]
EOS = 1


class WordTokenizer:
    """Whitespace tokenizer over a fixed vocabulary."""

    pad_token_id = 0
    eos_token_id = EOS

    def __call__(self, texts, add_special_tokens=True, padding=False, truncation=False):
        ids = [[WORDS.index(w) for w in text.split()] for text in texts]
        if add_special_tokens:
            ids = [row + [EOS] for row in ids]
        return {"input_ids": ids}

    def decode(self, ids, skip_special_tokens=True):
        if skip_special_tokens:
            ids = [i for i in ids if i > EOS]
        return " ".join(WORDS[i] for i in ids)


class EchoLengthModel:
    """Encoder-decoder fake emitting ``five six </s>``."""

    is_encoder_decoder = True
    script = [5, 6, EOS]

    def __init__(self):
        self.batch_sizes = []

    def __call__(self, inputs):
        decoder_input_ids = inputs["decoder_input_ids"]
        B, L = decoder_input_ids.shape
        if L == 1:
            self.batch_sizes.append(B)
        token = self.script[min(L - 1, len(self.script) - 1)]
        logits = mx.where(mx.arange(len(WORDS)) == token, 10.0, 0.0)
        return {"logits": mx.broadcast_to(logits, (B, L, len(WORDS)))}


class TestTextGeneration(unittest.TestCase):

    def test_single_input(self):
        serving = text_generation(
            EchoLengthModel(), WordTokenizer(), GenerationConfig(max_length=10)
        )
        result = serving.run("a b")
        self.assertEqual(result["text"], "five six")
        self.assertEqual(result["token_summary"], {"input": 3, "output": 3})

    def test_list_input(self):
        serving = text_generation(
            EchoLengthModel(), WordTokenizer(), GenerationConfig(max_length=10)
        )
        results = serving.run(["a", "a b c"])
        self.assertEqual([r["text"] for r in results], ["five six", "five six"])
        self.assertEqual([r["token_summary"]["input"] for r in results], [2, 4])

    def test_max_length_truncates_output(self):
        serving = text_generation(
            EchoLengthModel(), WordTokenizer(), GenerationConfig(max_length=2)
        )
        self.assertEqual(serving.run("a")["text"], "five")

    def test_scores(self):
        serving = text_generation(
            EchoLengthModel(),
            WordTokenizer(),
            GenerationConfig(max_length=10, output_scores=True),
        )
        result = serving.run("a")
        self.assertEqual(len(result["scores"]), 3)

    def test_compiled_batch_is_padded(self):
        model = EchoLengthModel()
        serving = text_generation(
            model,
            WordTokenizer(),
            GenerationConfig(max_length=10),
            compile={"batch_size": 2, "sequence_length": 4},
        )
        result = serving.run("a b")
        self.assertEqual(result["text"], "five six")
        self.assertEqual(model.batch_sizes[-1], 2)

        with self.assertRaises(ConfigurationError):
            serving.run("a b c a b")

    def test_rejects_mlx_compiler(self):
        with self.assertRaises(ConfigurationError):
            text_generation(EchoLengthModel(), WordTokenizer(), compiler="mlx")

    def test_rejects_non_string_input(self):
        serving = text_generation(EchoLengthModel(), WordTokenizer())
        with self.assertRaises(InputValidationError):
            serving.run(["a", 3])

    def test_does_not_modify_caller_config(self):
        config = GenerationConfig(max_length=10)
        text_generation(EchoLengthModel(), WordTokenizer(), config)
        self.assertIsNone(config.eos_token_id)
        self.assertIsNone(config.decoder_start_token_id)


class TestTokenizerWrapper(unittest.TestCase):

    def test_delegation(self):
        tokenizer = TokenizerWrapper(WordTokenizer(), pad_direction="left")
        self.assertEqual(tokenizer.eos_token_ids, {EOS})
        self.assertEqual(tokenizer.pad_token_id, 0)
        self.assertEqual(tokenizer.encode_batch(["a b"]), [[2, 3, EOS]])
        self.assertEqual(tokenizer.decode([5, EOS]), "five")

        tokenizer.eos_token_ids = [1, 4]
        self.assertEqual(tokenizer.eos_token_ids, {1, 4})

    def test_bad_direction(self):
        with self.assertRaises(ValueError):
            TokenizerWrapper(WordTokenizer(), pad_direction="center")


if __name__ == "__main__":
    unittest.main()
