"""Cooperative start/stop driver for a training step engine."""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional, Tuple

from .engine import StepRecord, TrainingStepEngine

if TYPE_CHECKING:  # pragma: no cover
    from .bridge import VisualizationBridge

LOG = logging.getLogger("playground.controller")


def _log(event: str, **payload: object) -> None:
    message = {"event": event, **payload}
    LOG.info(json.dumps(message, sort_keys=True))


class TrainingState(str, Enum):
    IDLE = "idle"
    TRAINING = "training"
    STOPPING = "stopping"


class TrainingLoopController:
    """Runs ``engine.step()`` repeatedly inside an asyncio task.

    A stop request is honoured at the top of the next iteration; the iteration
    in flight always completes. Work queued with ``call_at_boundary`` runs at
    that same point, so it never interleaves with an optimizer phase.
    """

    def __init__(
        self,
        engine: TrainingStepEngine,
        *,
        bridge: Optional["VisualizationBridge"] = None,
        max_iterations: Optional[int] = None,
        name: str = "ensemble",
    ) -> None:
        self.engine = engine
        self.bridge = bridge
        self.max_iterations = max_iterations
        self.name = name
        self.state = TrainingState.IDLE
        self.last_error: Optional[BaseException] = None
        self.last_record: Optional[StepRecord] = None
        self._stop_requested = False
        self._task: Optional[asyncio.Task] = None
        self._boundary: List[Tuple[Callable[[], Any], asyncio.Future]] = []
        self._on_record: List[Callable[[StepRecord], None]] = []

    @property
    def is_training(self) -> bool:
        return self.state is not TrainingState.IDLE

    def add_record_listener(self, listener: Callable[[StepRecord], None]) -> None:
        self._on_record.append(listener)

    # ------------------------------------------------------------------ #
    # Control surface
    # ------------------------------------------------------------------ #

    def toggle(self) -> bool:
        """Start training when idle, request a stop otherwise.

        Returns True when a training task was started.
        """
        if self.state is TrainingState.IDLE:
            if not self.engine.can_train():
                LOG.warning("Refusing to start '%s': the sample source is empty.", self.name)
                _log("training_refused", ensemble=self.name, reason="empty_source")
                return False
            self._start()
            return True
        self.request_stop()
        return False

    def request_stop(self) -> None:
        if self.state is TrainingState.TRAINING:
            self.state = TrainingState.STOPPING
            self._stop_requested = True
            _log("training_stop_requested", ensemble=self.name, iteration=self.engine.iteration)

    async def stop(self) -> None:
        self.request_stop()
        await self.wait()

    async def wait(self) -> None:
        task = self._task
        if task is not None:
            await asyncio.shield(task)

    def call_at_boundary(self, fn: Callable[[], Any]) -> Awaitable[Any]:
        """Run ``fn`` between iterations; immediately when idle."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        if self.state is TrainingState.IDLE:
            try:
                future.set_result(fn())
            except Exception as exc:
                future.set_exception(exc)
            return future
        self._boundary.append((fn, future))
        return future

    # ------------------------------------------------------------------ #
    # Loop
    # ------------------------------------------------------------------ #

    def _start(self) -> None:
        self.state = TrainingState.TRAINING
        self._stop_requested = False
        self.last_error = None
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"train-{self.name}")
        _log("training_started", ensemble=self.name, iteration=self.engine.iteration)

    def _drain_boundary(self) -> None:
        pending, self._boundary = self._boundary, []
        for fn, future in pending:
            if future.cancelled():
                continue
            try:
                future.set_result(fn())
            except Exception as exc:
                future.set_exception(exc)

    def _limit_reached(self) -> bool:
        return self.max_iterations is not None and self.engine.iteration >= self.max_iterations

    async def _run(self) -> None:
        try:
            while True:
                self._drain_boundary()
                if self._stop_requested or self._limit_reached():
                    break
                if not self.engine.can_train():
                    LOG.warning("Sample source for '%s' became empty; stopping.", self.name)
                    break
                record = await self.engine.step()
                self.last_record = record
                for listener in self._on_record:
                    listener(record)
                if self.bridge is not None:
                    await self.bridge.publish(record)
        except asyncio.CancelledError:
            self._finish("cancelled")
            raise
        except Exception as exc:
            self.last_error = exc
            LOG.exception("Training loop for '%s' failed at iteration %d.", self.name, self.engine.iteration)
            self._finish("failed", error=repr(exc))
            return
        self._finish("stopped")

    def _finish(self, reason: str, **payload: object) -> None:
        self.engine.ensemble.freeze_all()
        self.state = TrainingState.IDLE
        self._stop_requested = False
        self._drain_boundary()
        _log(
            "training_finished",
            ensemble=self.name,
            reason=reason,
            iteration=self.engine.iteration,
            non_finite_events=self.engine.non_finite_events,
            **payload,
        )
