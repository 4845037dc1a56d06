"""
Step sequencer: the resumable state machine of the bootstrap.

The deployment record's ``step`` names the next stage to execute. The
sequencer looks that step up in an explicit transition table, dispatches
exactly one stage, and persists the transition's next step only after the
stage succeeded. A failed stage leaves the step where it was, so the next
invocation retries the same stage and never repeats completed ones.

Transitions (linear):

    0 bootstrap-deployer        -> 1 (3 when FORCE_RESET is set)
    1 validate-keyvault-access  -> 2
    2 bootstrap-library         -> 3
    3 migrate-deployer-state    -> 4
    4 migrate-library-state     -> 5 (complete)

The FORCE_RESET rule covers a library that is already bootstrapped: after
the deployer is rebuilt only its state migration remains to be done.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from controlplane.banner import print_banner, report_progress
from controlplane.context import DeploymentContext
from controlplane.errors import StageFailed
from controlplane.models import INITIAL_STEP, TERMINAL_STEP
from controlplane.stages import (
    BootstrapDeployer,
    BootstrapLibrary,
    MigrateDeployerState,
    MigrateLibraryState,
    Stage,
    StageOutcome,
    ValidateKeyvaultAccess,
)

__all__ = ["Transition", "TRANSITIONS", "FORCE_RESET_STEP", "StepSequencer"]

logger = logging.getLogger(__name__)

# Step the force-reset rule jumps to after the deployer bootstrap
FORCE_RESET_STEP = 3


@dataclass(frozen=True)
class Transition:
    """One row of the transition table."""
    step: int
    stage: Stage
    next_step: int
    progress: int


TRANSITIONS: Dict[int, Transition] = {
    0: Transition(0, BootstrapDeployer(), 1, progress=20),
    1: Transition(1, ValidateKeyvaultAccess(), 2, progress=40),
    2: Transition(2, BootstrapLibrary(), 3, progress=60),
    3: Transition(3, MigrateDeployerState(), 4, progress=80),
    4: Transition(4, MigrateLibraryState(), TERMINAL_STEP, progress=100),
}


class StepSequencer:
    """
    Drives the stages of one deployment from the persisted step to completion.

    Args:
        ctx: Deployment context (record already initialized by the store)
        transitions: Transition table keyed by step
    """

    def __init__(
        self,
        ctx: DeploymentContext,
        transitions: Optional[Dict[int, Transition]] = None,
    ):
        self.ctx = ctx
        self.transitions = TRANSITIONS if transitions is None else transitions

    def next_step_after(self, step: int) -> int:
        """Step that follows a successful ``step``, including the force-reset rule."""
        if step == INITIAL_STEP and self.ctx.config.force_reset:
            return FORCE_RESET_STEP
        return self.transitions[step].next_step

    def run(self) -> int:
        """
        Execute stages until the terminal step is reached.

        Returns:
            The final step (always the terminal step on return).

        Raises:
            StageFailed: When a stage fails; no later stage runs.
        """
        step = self.ctx.record.step
        if step >= TERMINAL_STEP:
            logger.info("All stages already completed")

        while step < TERMINAL_STEP:
            self.dispatch(step)
            step = self.ctx.record.step

        self.ctx.store.clear_error_marker()
        return step

    def dispatch(self, step: int) -> StageOutcome:
        """Run the stage for ``step`` and persist the transition on success."""
        transition = self.transitions[step]
        stage = transition.stage
        record = self.ctx.record
        store = self.ctx.store
        events = self.ctx.events

        history = record.stage_run(stage.name)
        history.mark_running()
        store.save("stages", record)
        events.log_stage_started(step, stage.name)

        try:
            outcome = stage.execute(self.ctx)
        except StageFailed as e:
            history.mark_failed(e.message)
            store.save("stages", record)
            store.write_error_marker(e.message)
            events.log_stage_failed(step, stage.name, e.message, e.exit_code)
            print_banner(stage.title, e.message, "error")
            raise

        next_step = self.next_step_after(step)
        record.advance_to(next_step)
        store.save("step", record)

        if outcome == StageOutcome.SKIPPED:
            history.mark_skipped()
            events.log_stage_skipped(step, stage.name, reason="step mismatch")
        else:
            history.mark_completed()
            events.log_stage_completed(step, stage.name, next_step, history.duration_seconds)
        store.save("stages", record)

        report_progress(transition.progress, ado=self.ctx.config.is_ado)
        return outcome
