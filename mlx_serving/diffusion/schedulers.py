# Copyright © 2023-2025 Apple Inc.

import inspect
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

import mlx.core as mx
import numpy as np

from ..serving import ConfigurationError, parse_option


class BetaSchedule(str, Enum):
    LINEAR = "linear"
    SCALED_LINEAR = "scaled_linear"


class PredictionType(str, Enum):
    EPSILON = "epsilon"
    V_PREDICTION = "v_prediction"


@dataclass
class SchedulerConfig:
    num_train_steps: int = 1000
    beta_start: float = 0.00085
    beta_end: float = 0.012
    beta_schedule: str = "scaled_linear"
    steps_offset: int = 1
    prediction_type: str = "epsilon"

    def __post_init__(self):
        self.beta_schedule = parse_option(BetaSchedule, self.beta_schedule, "beta_schedule")
        self.prediction_type = parse_option(
            PredictionType, self.prediction_type, "prediction_type"
        )
        if self.beta_schedule is None or self.prediction_type is None:
            raise ConfigurationError("beta_schedule and prediction_type must not be None")
        if self.num_train_steps <= 0:
            raise ConfigurationError(
                f"num_train_steps must be positive, got: {self.num_train_steps}"
            )

    @classmethod
    def from_dict(cls, params: Dict[str, Any]) -> "SchedulerConfig":
        return cls(
            **{
                k: v
                for k, v in params.items()
                if k in inspect.signature(cls).parameters
            }
        )


@dataclass(frozen=True)
class SchedulerState:
    """Position of a denoising run within its timestep schedule.

    States are immutable; ``step`` returns the next one.
    """

    timesteps: Tuple[int, ...]
    index: int = 0
    sigmas: Optional[Tuple[float, ...]] = None

    @property
    def num_steps(self) -> int:
        return len(self.timesteps)

    @property
    def done(self) -> bool:
        return self.index >= self.num_steps

    @property
    def timestep(self) -> int:
        return self.timesteps[self.index]

    def advance(self) -> "SchedulerState":
        return replace(self, index=self.index + 1)


class Scheduler:
    """Base class for noise schedulers.

    A scheduler is used as ``state = init(num_steps)`` followed by exactly
    ``num_steps`` calls of ``step``, each consuming the state returned by the
    previous call.
    """

    def __init__(self, config: Optional[SchedulerConfig] = None, **kwargs):
        self.config = config or SchedulerConfig.from_dict(kwargs)
        self.alphas_cumprod = self._alphas_cumprod(self.config)

    @staticmethod
    def _alphas_cumprod(config: SchedulerConfig) -> np.ndarray:
        n = config.num_train_steps
        if config.beta_schedule is BetaSchedule.SCALED_LINEAR:
            betas = np.linspace(config.beta_start**0.5, config.beta_end**0.5, n) ** 2
        else:
            betas = np.linspace(config.beta_start, config.beta_end, n)
        return np.cumprod(1.0 - betas)

    def init(self, num_steps: int) -> SchedulerState:
        raise NotImplementedError

    def init_noise_sigma(self, state: SchedulerState) -> float:
        return 1.0

    def scale_input(self, state: SchedulerState, latents: mx.array) -> mx.array:
        return latents

    def step(
        self, state: SchedulerState, noise: mx.array, latents: mx.array
    ) -> Tuple[mx.array, SchedulerState]:
        raise NotImplementedError

    def _check_steps(self, num_steps: int):
        if not 0 < num_steps <= self.config.num_train_steps:
            raise ConfigurationError(
                f"num_steps must be in [1, {self.config.num_train_steps}], got: {num_steps}"
            )

    @staticmethod
    def _check_state(state: SchedulerState):
        if state.done:
            raise ValueError(
                f"scheduler stepped past the end of its {state.num_steps} step schedule"
            )


class DDIMScheduler(Scheduler):
    """Deterministic DDIM sampling (``eta = 0``) with leading timestep spacing."""

    def init(self, num_steps: int) -> SchedulerState:
        self._check_steps(num_steps)
        ratio = self.config.num_train_steps // num_steps
        timesteps = np.arange(num_steps)[::-1] * ratio + self.config.steps_offset
        timesteps = np.minimum(timesteps, self.config.num_train_steps - 1)
        return SchedulerState(timesteps=tuple(int(t) for t in timesteps))

    def step(self, state, noise, latents):
        self._check_state(state)
        t = state.timestep
        ratio = self.config.num_train_steps // state.num_steps
        prev_t = t - ratio
        alpha_t = float(self.alphas_cumprod[t])
        alpha_prev = float(self.alphas_cumprod[prev_t]) if prev_t >= 0 else 1.0

        if self.config.prediction_type is PredictionType.EPSILON:
            sample = (latents - (1 - alpha_t) ** 0.5 * noise) / alpha_t**0.5
            eps = noise
        else:
            sample = alpha_t**0.5 * latents - (1 - alpha_t) ** 0.5 * noise
            eps = alpha_t**0.5 * noise + (1 - alpha_t) ** 0.5 * latents

        latents = alpha_prev**0.5 * sample + (1 - alpha_prev) ** 0.5 * eps
        return latents, state.advance()


class EulerDiscreteScheduler(Scheduler):
    """Euler method over the Karras sigma parameterisation."""

    def init(self, num_steps: int) -> SchedulerState:
        self._check_steps(num_steps)
        n = self.config.num_train_steps
        timesteps = np.linspace(0, n - 1, num_steps)[::-1]
        train_sigmas = ((1 - self.alphas_cumprod) / self.alphas_cumprod) ** 0.5
        sigmas = np.interp(timesteps, np.arange(n), train_sigmas)
        return SchedulerState(
            timesteps=tuple(int(round(t)) for t in timesteps),
            sigmas=tuple(float(s) for s in sigmas) + (0.0,),
        )

    def init_noise_sigma(self, state):
        return (max(state.sigmas) ** 2 + 1) ** 0.5

    def scale_input(self, state, latents):
        sigma = state.sigmas[state.index]
        return latents / (sigma**2 + 1) ** 0.5

    def step(self, state, noise, latents):
        self._check_state(state)
        sigma = state.sigmas[state.index]
        sigma_next = state.sigmas[state.index + 1]

        if self.config.prediction_type is PredictionType.EPSILON:
            sample = latents - sigma * noise
        else:
            sample = noise * (-sigma / (sigma**2 + 1) ** 0.5) + latents / (sigma**2 + 1)

        derivative = (latents - sample) / sigma
        latents = latents + derivative * (sigma_next - sigma)
        return latents, state.advance()


class SchedulerName(str, Enum):
    DDIM = "ddim"
    EULER = "euler"


_SCHEDULERS = {
    SchedulerName.DDIM: DDIMScheduler,
    SchedulerName.EULER: EulerDiscreteScheduler,
}


def make_scheduler(name: Union[str, SchedulerName], **kwargs) -> Scheduler:
    """Build a scheduler by name; keyword arguments are ``SchedulerConfig`` fields."""
    kind = parse_option(SchedulerName, name, "scheduler")
    if kind is None:
        raise ConfigurationError("scheduler must not be None")
    return _SCHEDULERS[kind](**kwargs)
