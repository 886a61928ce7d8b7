# Copyright © 2023-2025 Apple Inc.

from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Union

from transformers import AutoTokenizer

from .batching import Batch, pad_sequences


class TokenizerWrapper:
    """Adapts a Hugging Face tokenizer to the batch interface of the servings.

    Accessing any attribute other than the ones defined here is forwarded to
    the wrapped tokenizer.
    """

    def __init__(
        self,
        tokenizer,
        pad_direction: str = "right",
        add_special_tokens: bool = True,
        eos_token_ids: Optional[Iterable[int]] = None,
    ):
        if pad_direction not in ("left", "right"):
            raise ValueError(
                f"Expected pad_direction to be 'left' or 'right', got {pad_direction!r}"
            )
        self._tokenizer = tokenizer
        self._pad_direction = pad_direction
        self._add_special_tokens = add_special_tokens

        eos_token_id = getattr(tokenizer, "eos_token_id", None)
        self._eos_token_ids = (
            set(eos_token_ids)
            if eos_token_ids is not None
            else {eos_token_id}
            if eos_token_id is not None
            else set()
        )

    @property
    def pad_direction(self) -> str:
        return self._pad_direction

    @property
    def pad_token_id(self) -> int:
        pad = getattr(self._tokenizer, "pad_token_id", None)
        if pad is None:
            pad = getattr(self._tokenizer, "eos_token_id", None)
        return 0 if pad is None else pad

    def encode_batch(self, texts: Sequence[str]) -> List[List[int]]:
        encoded = self._tokenizer(
            list(texts),
            add_special_tokens=self._add_special_tokens,
            padding=False,
            truncation=False,
        )
        return [list(ids) for ids in encoded["input_ids"]]

    def decode(self, token_ids: Sequence[int], skip_special_tokens: bool = True) -> str:
        return self._tokenizer.decode(list(token_ids), skip_special_tokens=skip_special_tokens)

    def __getattr__(self, attr):
        if attr == "eos_token_ids":
            return self._eos_token_ids
        elif attr.startswith("_"):
            return self.__getattribute__(attr)
        else:
            return getattr(self._tokenizer, attr)

    def __setattr__(self, attr, value):
        if attr == "eos_token_ids":
            self._eos_token_ids = set(value) if value is not None else set()
        elif attr.startswith("_"):
            super().__setattr__(attr, value)
        else:
            setattr(self._tokenizer, attr, value)


def apply_tokenizer(
    tokenizer: Any,
    texts: Sequence[str],
    *,
    length: Optional[int] = None,
    pad_direction: Optional[str] = None,
) -> Batch:
    """Tokenize ``texts`` into an ``input_ids``/``attention_mask`` batch.

    Rows are padded to the longest text or to ``length`` when given. Texts
    longer than ``length`` are kept whole so the serving can reject them.
    """
    if not isinstance(tokenizer, TokenizerWrapper):
        tokenizer = TokenizerWrapper(tokenizer)
    input_ids, attention_mask = pad_sequences(
        tokenizer.encode_batch(texts),
        tokenizer.pad_token_id,
        length=length,
        direction=pad_direction or tokenizer.pad_direction,
    )
    return Batch({"input_ids": input_ids, "attention_mask": attention_mask})


def load_tokenizer(
    model_path: Union[str, Path],
    tokenizer_config_extra: Optional[dict] = None,
    pad_direction: str = "right",
    eos_token_ids: Optional[Iterable[int]] = None,
) -> TokenizerWrapper:
    """Load a Hugging Face tokenizer from a local directory or hub repo id."""
    tokenizer = AutoTokenizer.from_pretrained(str(model_path), **(tokenizer_config_extra or {}))
    return TokenizerWrapper(tokenizer, pad_direction=pad_direction, eos_token_ids=eos_token_ids)
