# Copyright © 2023-2025 Apple Inc.

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    Hashable,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
)

import mlx.core as mx
from mlx.utils import tree_map

from .batching import Batch, ShapeTemplate, split, trim


class ConfigurationError(ValueError):
    """Raised for invalid options, missing compile options or shape overflow."""


class InputValidationError(ValueError):
    """Raised during preprocessing when caller input is malformed."""

    def __init__(self, message: str, field: str = "input"):
        super().__init__(f"{field}: {message}")
        self.field = field


class ExecutionError(RuntimeError):
    """Raised when the underlying computation graph fails."""


E = TypeVar("E", bound=Enum)


def parse_option(enum_cls: Type[E], value: Union[str, E, None], option: str) -> Optional[E]:
    """Resolve an option name to one of the members of ``enum_cls``.

    ``None`` is passed through and means the option is disabled.
    """
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(repr(m.value) for m in enum_cls)
        raise ConfigurationError(
            f"expected {option} to be one of None, {choices}, got: {value!r}"
        ) from None


def validate_options(
    options: Dict[str, Any], allowed: Iterable[str], name: str = "options"
) -> Dict[str, Any]:
    allowed = set(allowed)
    unknown = sorted(set(options) - allowed)
    if unknown:
        raise ConfigurationError(
            f"unknown {name} {unknown}, expected keys from {sorted(allowed)}"
        )
    return dict(options)


def require_options(options: Dict[str, Any], required: Iterable[str], name: str = "options"):
    missing = [k for k in required if options.get(k) is None]
    if missing:
        raise ConfigurationError(f"missing required {name} {missing}")
    return options


class Compiler(str, Enum):
    MLX = "mlx"
    NONE = "none"


@dataclass(frozen=True)
class ServingConfig:
    """Shape constraints and compilation options bound at construction."""

    batch_size: Optional[int] = None
    sequence_length: Optional[int] = None
    compiler: Compiler = Compiler.MLX
    shapeless: bool = False

    def __post_init__(self):
        object.__setattr__(self, "compiler", parse_option(Compiler, self.compiler, "compiler"))
        for name in ("batch_size", "sequence_length"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(f"{name} must be positive, got: {value}")
        if (self.batch_size is None) != (self.sequence_length is None):
            raise ConfigurationError(
                "batch_size and sequence_length must be given together"
            )

    @property
    def compiled(self) -> bool:
        return self.batch_size is not None

    @classmethod
    def from_options(
        cls,
        compile: Optional[Dict[str, Any]] = None,
        compiler: Union[str, Compiler] = Compiler.MLX,
        shapeless: bool = False,
    ) -> "ServingConfig":
        if compile is None:
            return cls(compiler=compiler, shapeless=shapeless)
        compile = validate_options(compile, ("batch_size", "sequence_length"), "compile options")
        require_options(compile, ("batch_size", "sequence_length"), "compile options")
        return cls(
            batch_size=compile["batch_size"],
            sequence_length=compile["sequence_length"],
            compiler=compiler,
            shapeless=shapeless,
        )


class CompiledCache:
    """Shape-keyed map of specialized callables with single-flight builds.

    Concurrent lookups of a missing key block on the first caller's build
    instead of compiling again. A failed build is not cached; the next waiter
    retries it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, Callable] = {}
        self._pending: Dict[Hashable, threading.Event] = {}
        self.builds = 0

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> List[Hashable]:
        with self._lock:
            return list(self._entries)

    def get(self, key: Hashable, build: Callable[[], Callable]) -> Callable:
        while True:
            with self._lock:
                fn = self._entries.get(key)
                if fn is not None:
                    return fn
                event = self._pending.get(key)
                owner = event is None
                if owner:
                    event = threading.Event()
                    self._pending[key] = event
                    self.builds += 1
            if not owner:
                event.wait()
                continue
            try:
                fn = build()
                with self._lock:
                    self._entries[key] = fn
                return fn
            finally:
                with self._lock:
                    self._pending.pop(key, None)
                event.set()


def validate_string(value: Any, field: str = "input") -> str:
    if not isinstance(value, str):
        raise InputValidationError(
            f"expected a string, got: {type(value).__name__}", field
        )
    return value


def validate_serving_input(
    input: Any, validator: Callable[[Any, str], Any]
) -> Tuple[List[Any], bool]:
    """Validate caller input and record whether it was a list.

    Returns the validated items and the multiplicity flag consumed later by
    ``normalize_output``.
    """
    if isinstance(input, list):
        if not input:
            raise InputValidationError("expected a non-empty list", "input")
        return [validator(x, f"input[{i}]") for i, x in enumerate(input)], True
    return [validator(input, "input")], False


def normalize_output(outputs: Sequence[Any], multi: bool) -> Any:
    if multi:
        return list(outputs)
    (output,) = outputs
    return output


def _concatenate_outputs(outputs: List[Any]) -> Any:
    if len(outputs) == 1:
        return outputs[0]

    def _concat(*xs):
        if isinstance(xs[0], mx.array) and xs[0].ndim > 0:
            return mx.concatenate(xs, axis=0)
        return xs[0]

    return tree_map(_concat, outputs[0], *outputs[1:])


class Serving:
    """A {preprocess, execute, postprocess} inference pipeline.

    Args:
        execute: Pure function mapping a named input map to a (nested)
            structure of arrays sharing the leading batch dimension.
        preprocess: Maps caller input to ``(Batch, info)``. Must not touch
            serving state.
        postprocess: Maps ``(outputs, info)`` to the caller-facing result.
        config: Compile constraints and backend options.
        templates: Callable returning the input templates for a
            ``(batch_size, sequence_length)`` pair. Required when the
            config carries compile constraints.
    """

    def __init__(
        self,
        execute: Callable[[Dict[str, mx.array]], Any],
        *,
        preprocess: Callable[[Any], Tuple[Batch, Any]],
        postprocess: Callable[[Any, Any], Any],
        config: Optional[ServingConfig] = None,
        templates: Optional[Callable[[int, int], Dict[str, ShapeTemplate]]] = None,
    ):
        self.execute = execute
        self.preprocess = preprocess
        self.postprocess = postprocess
        self.config = config or ServingConfig()
        self._cache = CompiledCache()
        self._templates: Optional[Dict[str, ShapeTemplate]] = None

        if self.config.compiled:
            if templates is None:
                raise ConfigurationError(
                    "compile options given but the serving declares no input templates"
                )
            self._templates = templates(
                self.config.batch_size, self.config.sequence_length
            )
            warmup = Batch.from_templates(self._templates)
            self._specialized(warmup, warmup=True)

    @property
    def compiled_shapes(self) -> List[Hashable]:
        return self._cache.keys()

    @property
    def compilations(self) -> int:
        return self._cache.builds

    def _build(self, key: Hashable, batch: Optional[Batch], outputs: List[Any]) -> Callable:
        logging.info("serving.compile compiler=%s key=%s", self.config.compiler.value, key)
        if self.config.compiler is Compiler.MLX:
            fn = mx.compile(self.execute, shapeless=self.config.shapeless)
        else:
            fn = self.execute
        # Tracing happens on the first call, so it runs inside the build
        if batch is not None:
            result = fn(dict(batch))
            mx.eval(result)
            outputs.append(result)
        return fn

    def _specialized(self, batch: Batch, warmup: bool = False) -> Tuple[Callable, Any]:
        """Return the callable for ``batch``'s shape key and, when this call
        built it, the outputs it computed on ``batch``."""
        key = batch.shape_key()
        trace = warmup or self.config.compiler is Compiler.MLX
        outputs: List[Any] = []
        fn = self._cache.get(
            key, lambda: self._build(key, batch if trace else None, outputs)
        )
        return fn, (outputs[0] if outputs else None)

    def _check_compiled_shape(self, batch: Batch) -> None:
        try:
            batch.validate(self._templates)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        for name, value in batch.items():
            t = self._templates.get(name)
            if t is None:
                raise ConfigurationError(
                    f"input {name!r} is not part of the compiled inputs {sorted(self._templates)}"
                )
            if tuple(value.shape[1:]) != t.shape[1:]:
                if value.ndim > 1 and value.shape[1] > t.shape[1]:
                    raise ConfigurationError(
                        f"input {name!r} has sequence length {value.shape[1]}, which "
                        f"exceeds the compiled sequence_length {t.shape[1]}"
                    )
                raise ConfigurationError(
                    f"input {name!r} has shape {value.shape}, expected rows of "
                    f"shape {t.shape[1:]}"
                )

    def _run_chunk(self, batch: Batch) -> Any:
        size = batch.size
        if self.config.compiled:
            self._check_compiled_shape(batch)
            batch = batch.pad(self.config.batch_size)
        try:
            fn, outputs = self._specialized(batch)
            if outputs is None:
                outputs = fn(dict(batch))
                mx.eval(outputs)
        except (ConfigurationError, InputValidationError):
            raise
        except Exception as e:
            raise ExecutionError(f"execution failed for batch of size {size}: {e}") from e
        return trim(outputs, size)

    def run_batch(self, batch: Batch) -> Any:
        """Execute a preprocessed batch, splitting it into compiled-size chunks."""
        step = self.config.batch_size or batch.size
        outputs = [
            self._run_chunk(batch.slice(start, start + step))
            for start in range(0, batch.size, step)
        ]
        return _concatenate_outputs(outputs)

    def run(self, input: Any) -> Any:
        batch, info = self.preprocess(input)
        return self.postprocess(self.run_batch(batch), info)

    __call__ = run

    def batched_run(self, requests: Sequence[Any]) -> List[Any]:
        """Run several client requests as concatenated batches.

        Requests whose rows share a shape are executed together; results are
        returned in request order.
        """
        prepared = [self.preprocess(r) for r in requests]
        groups: Dict[Hashable, List[int]] = {}
        for i, (batch, _) in enumerate(prepared):
            row_key = tuple(
                (name, tuple(v.shape[1:]), str(v.dtype)) for name, v in sorted(batch.items())
            )
            groups.setdefault(row_key, []).append(i)

        results: List[Any] = [None] * len(prepared)
        for indices in groups.values():
            batch = Batch.concatenate(prepared[i][0] for i in indices)
            outputs = self.run_batch(batch)
            parts = split(outputs, [prepared[i][0].size for i in indices])
            for i, out in zip(indices, parts):
                results[i] = self.postprocess(out, prepared[i][1])
        return results
