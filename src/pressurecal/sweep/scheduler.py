"""Step-by-step execution of an ascending-then-descending pressure profile.

Step ``i`` of a sweep is ``increasing_steps[i]`` while
``i < len(increasing_steps)``, and ``decreasing_steps[i - len(increasing_steps)]``
after that. Each `SweepScheduler.advance` runs exactly one step: one pressure
command and its settle wait. Then it announces `StepReady`. Steps never
reorder or skip.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass

from loguru import logger
from mashumaro import DataClassDictMixin

from pressurecal.types.config import SweepConfig
from pressurecal.types.errors import OperationCancelledError
from pressurecal.types.messages import (
    PhaseChanged,
    StepReady,
    SweepCompleted,
    notify,
)
from pressurecal.types.protocols import InstrumentDriver, IsActive


class SweepPhase(str, enum.Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"


@dataclass(frozen=True)
class SweepStep(DataClassDictMixin):
    index: int
    pressure: float
    phase: SweepPhase


@dataclass(frozen=True)
class AdvanceResult:
    completed: bool
    step: SweepStep | None = None
    measured_pressure: float | None = None


@dataclass(frozen=True)
class SweepStatus(DataClassDictMixin):
    current_step_index: int
    total_steps: int
    is_increasing_phase: bool
    completed: bool
    current_step: SweepStep | None


def step_at(config: SweepConfig, index: int) -> SweepStep:
    n_inc = len(config.increasing_steps)
    if not 0 <= index < config.total_steps:
        raise IndexError(f"Step {index} out of range (0..{config.total_steps - 1})")
    if index < n_inc:
        return SweepStep(index, config.increasing_steps[index], SweepPhase.INCREASING)
    return SweepStep(
        index, config.decreasing_steps[index - n_inc], SweepPhase.DECREASING
    )


def sweep_steps(config: SweepConfig) -> list[SweepStep]:
    return [step_at(config, i) for i in range(config.total_steps)]


class SweepScheduler:
    def __init__(
        self,
        instrument: InstrumentDriver,
        notif_queue: asyncio.Queue | None = None,
        verify: bool = True,
    ):
        self.instrument = instrument
        self.notif_queue = notif_queue
        self.verify = verify
        self.config: SweepConfig | None = None
        self.current_step_index = 0
        self.total_steps = 0
        self.is_increasing_phase = True

    def start(self, config: SweepConfig) -> None:
        """Load `config` and rewind to the first step.

        Raises
        ------
        SweepConfigError
            Either leg is empty (or otherwise invalid).
        """
        config.validate()
        self.config = config
        self.current_step_index = 0
        self.total_steps = config.total_steps
        self.is_increasing_phase = True
        logger.info(
            "Sweep loaded: {} increasing + {} decreasing steps",
            len(config.increasing_steps),
            len(config.decreasing_steps),
        )

    @property
    def completed(self) -> bool:
        return self.config is not None and self.current_step_index >= self.total_steps

    def current_step(self) -> SweepStep | None:
        """The next step to run, None once complete (or before start)."""
        if self.config is None or self.completed:
            return None
        return step_at(self.config, self.current_step_index)

    async def advance(self, is_active: IsActive | None = None) -> AdvanceResult:
        """Run the next step.

        Raises
        ------
        OperationCancelledError
            `is_active()` was False before the step (nothing is commanded), or
            went False during the settle wait.
        PressureSetError
            The step's pressure could not be verified.
        """
        if self.config is None:
            raise RuntimeError("SweepScheduler.advance() called before start()")
        if self.completed:
            return AdvanceResult(completed=True)
        if is_active is not None and not is_active():
            raise OperationCancelledError(
                f"Sweep cancelled before step {self.current_step_index}"
            )

        step = step_at(self.config, self.current_step_index)
        logger.info(
            "Step {}/{}: {} ({})",
            step.index + 1,
            self.total_steps,
            step.pressure,
            step.phase.value,
        )
        if step.pressure == 0:
            measured = await self.instrument.set_zero_pressure(
                verify=self.verify, is_active=is_active
            )
        else:
            measured = await self.instrument.set_pressure(
                step.pressure,
                verify=self.verify,
                tolerance=self.config.tolerance_absolute,
                is_active=is_active,
            )

        notify(
            self.notif_queue,
            StepReady(
                current_step=step.index + 1,
                total_steps=self.total_steps,
                step_index=step.index,
                pressure=step.pressure,
                phase=step.phase.value,
                measured_pressure=measured,
            ),
        )
        self.current_step_index += 1

        if self.is_increasing_phase and self.current_step_index >= len(
            self.config.increasing_steps
        ):
            self.is_increasing_phase = False
            logger.info("Sweep switching to decreasing phase")
            notify(
                self.notif_queue,
                PhaseChanged(
                    old_phase=SweepPhase.INCREASING.value,
                    new_phase=SweepPhase.DECREASING.value,
                    step_index=self.current_step_index,
                ),
            )

        if self.completed:
            logger.info("Sweep completed ({} steps)", self.total_steps)
            notify(self.notif_queue, SweepCompleted(total_steps=self.total_steps))
        return AdvanceResult(
            completed=self.completed, step=step, measured_pressure=measured
        )

    async def run(self, is_active: IsActive | None = None) -> list[AdvanceResult]:
        """Advance until complete. Returns the per-step results."""
        results = []
        while not self.completed:
            results.append(await self.advance(is_active))
        return results

    def status(self) -> SweepStatus:
        return SweepStatus(
            current_step_index=self.current_step_index,
            total_steps=self.total_steps,
            is_increasing_phase=self.is_increasing_phase,
            completed=self.completed,
            current_step=self.current_step(),
        )
