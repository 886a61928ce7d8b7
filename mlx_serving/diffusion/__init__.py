# Copyright © 2023-2025 Apple Inc.

from .schedulers import (
    DDIMScheduler,
    EulerDiscreteScheduler,
    Scheduler,
    SchedulerConfig,
    SchedulerState,
    make_scheduler,
)
from .stable_diffusion import text_to_image
