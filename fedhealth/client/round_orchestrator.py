"""
Round orchestration for federated health learning sessions.
Drives local training, privatization, secure exchange and convergence per round.
"""

import asyncio
import inspect
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional
import logging

import torch

from ..aggregation.convergence import ConvergenceMonitor
from ..shared.config import OrchestratorSettings
from ..shared.crypto import KeyManager
from ..shared.errors import FederatedLearningError, ModelNotLoaded, TrainingError
from ..shared.interfaces import LocalTrainerInterface, ModelStoreInterface
from ..shared.logging_config import AuditLogger, MetricsLogger, log_federated_event
from ..shared.models import (
    INITIAL_MODEL_VERSION, FederatedSession, LocalSamples, ModelUpdate, ModelVersion, ModelWeights,
    SessionStatus, TrainingProgress
)
from ..shared.privacy import DifferentialPrivacyEngine
from .failure_handler import FailureAction, FailureHandler
from .secure_transport import SecureTransport

logger = logging.getLogger(__name__)


class OrchestratorState(Enum):
    """Internal states of the round loop."""
    INITIALIZING = "initializing"
    TRAINING = "training"
    CONVERGED = "converged"
    MAX_ROUNDS_REACHED = "max_rounds_reached"
    FAILED = "failed"
    CANCELLED = "cancelled"
    FINALIZING = "finalizing"
    COMPLETED = "completed"


class RoundOrchestrator:
    """
    Runs the round loop of one session.

    The orchestrator exclusively owns the session's local model and session
    state. Progress leaves it only through the event stream returned by
    ``run()``; errors never escape the loop and are recorded on the session
    instead.
    """

    def __init__(self,
                 session: FederatedSession,
                 trainer: LocalTrainerInterface,
                 model: Optional[torch.nn.Module],
                 samples: LocalSamples,
                 privacy_engine: DifferentialPrivacyEngine,
                 transport: SecureTransport,
                 key_manager: KeyManager,
                 settings: Optional[OrchestratorSettings] = None,
                 model_store: Optional[ModelStoreInterface] = None,
                 base_version: Optional[str] = None,
                 metrics_logger: Optional[MetricsLogger] = None,
                 audit_logger: Optional[AuditLogger] = None):
        self.session = session
        self.trainer = trainer
        self.model = model
        self.samples = samples
        self.privacy_engine = privacy_engine
        self.transport = transport
        self.key_manager = key_manager
        self.settings = settings or OrchestratorSettings()
        self.model_store = model_store
        self.base_version = ModelVersion.parse(base_version) if base_version else INITIAL_MODEL_VERSION
        self.metrics_logger = metrics_logger
        self.audit_logger = audit_logger

        self.failure_handler = FailureHandler(self.settings.max_retries)
        self.monitor = ConvergenceMonitor(session.configuration.convergence_threshold)

        self.state = OrchestratorState.INITIALIZING
        self._stop_event = asyncio.Event()
        self._current_round = 0
        self._progress = 0.0
        self._last_loss: Optional[float] = None

    @property
    def current_round(self) -> int:
        return self._current_round

    @property
    def total_rounds(self) -> int:
        return self.session.configuration.max_rounds

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def stop(self):
        """Request cancellation; honored at the next round boundary."""
        if not self._stop_event.is_set():
            logger.info(f"Stop requested for session {self.session.id}")
        self._stop_event.set()

    def _set_state(self, state: OrchestratorState):
        logger.debug(f"Session {self.session.id}: {self.state.value} -> {state.value}")
        self.state = state

    async def _call(self, fn: Callable, *args) -> Any:
        """Invoke a trainer method off the event loop, or await it if async."""
        try:
            if inspect.iscoroutinefunction(fn):
                return await fn(*args)
            result = await asyncio.to_thread(fn, *args)
            if inspect.isawaitable(result):
                result = await result
            return result
        except FederatedLearningError:
            raise
        except Exception as e:
            raise TrainingError(f"{getattr(fn, '__name__', 'trainer call')} failed: {str(e)}") from e

    async def run(self) -> AsyncIterator[TrainingProgress]:
        """
        Run the session to a terminal state, yielding progress per round.

        Yields:
            TrainingProgress: One event after every completed round
        """
        session = self.session
        config = session.configuration

        try:
            if self.model is None:
                raise ModelNotLoaded(f"No local model loaded for session {session.id}")

            session.transition_to(SessionStatus.TRAINING)
            self._set_state(OrchestratorState.TRAINING)
            self._record_session()
            log_federated_event(logger, 'info', f"Training started for {session.model_type.value}",
                                session_id=session.id, total_rounds=config.max_rounds)

            for round_number in range(config.max_rounds):
                if self.stop_requested:
                    self._cancel("Stopped before round start")
                    return

                self._current_round = round_number
                session.current_round = round_number

                loss = await self._run_round(round_number)
                converged = self.monitor.observe(round_number, loss)

                self._last_loss = loss
                session.rounds_completed = round_number + 1
                self._progress = (round_number + 1) / config.max_rounds

                if self.metrics_logger:
                    self.metrics_logger.log_round_metrics(
                        session.id, round_number, config.max_rounds, loss, converged=converged
                    )

                yield TrainingProgress(
                    session_id=session.id,
                    round=round_number,
                    total_rounds=config.max_rounds,
                    progress_ratio=self._progress,
                    loss=loss
                )

                if converged:
                    self._set_state(OrchestratorState.CONVERGED)
                    break
                if round_number + 1 >= config.max_rounds:
                    self._set_state(OrchestratorState.MAX_ROUNDS_REACHED)
                    break
                if await self._pace():
                    self._cancel("Stopped between rounds")
                    return

            await self._finalize()

        except (asyncio.CancelledError, GeneratorExit):
            self._cancel("Training task cancelled")
            raise
        except Exception as e:
            self._fail(e)
        finally:
            self._release()

    async def _pace(self) -> bool:
        """Wait the pacing delay. Returns True if a stop arrived meanwhile."""
        if self.stop_requested:
            return True
        if self.settings.pacing_delay <= 0:
            return False
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.settings.pacing_delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run_round(self, round_number: int) -> float:
        """
        Run one round with retries.

        Returns:
            float: Loss observed after applying the aggregated update
        """
        session = self.session
        config = session.configuration
        privatized: Optional[ModelUpdate] = None
        baseline: Optional[ModelWeights] = None
        rekey = False

        while True:
            try:
                if rekey:
                    await self.key_manager.establish_channel(session.id, self.transport.coordinator_endpoint)
                    rekey = False

                if privatized is None:
                    # training mutates the model in place; a retried round starts from the same weights
                    if baseline is None:
                        baseline = await self._call(self.trainer.extract_weights, self.model)
                    else:
                        await self._call(self.trainer.apply_weights, baseline, self.model)
                    weights, train_loss = await self._call(
                        self.trainer.train, self.model, self.samples,
                        config.local_epochs, config.learning_rate, config.batch_size
                    )
                    local_update = ModelUpdate(weights=weights, loss=float(train_loss), samples=len(self.samples))
                    privatized = self.privacy_engine.privatize(
                        local_update, config.privacy_budget, self.settings.sensitivity, round_number
                    )
                    self._audit_disclosure(round_number)

                aggregated = await self.transport.send(privatized, session, round_number)
                await self._call(self.trainer.apply_weights, aggregated.weights, self.model)

                if self.settings.evaluate_after_apply:
                    loss = float(await self._call(self.trainer.evaluate, self.model, self.samples))
                else:
                    loss = float(aggregated.loss)

                self.failure_handler.reset_round(session.id, round_number)
                return loss

            except Exception as e:
                failure = self.failure_handler.record(session.id, round_number, e)
                if not self.failure_handler.should_retry(failure):
                    raise

                if failure.action == FailureAction.REBUILD_MESSAGE:
                    self.transport.discard(session.id, round_number)
                    rekey = True
                elif failure.action == FailureAction.RETRY_ROUND:
                    self.transport.discard(session.id, round_number)
                    privatized = None

                await asyncio.sleep(self.settings.retry_backoff * (2 ** (failure.attempt - 1)))

    def _audit_disclosure(self, round_number: int):
        if self.audit_logger is None:
            return
        config = self.session.configuration
        self.audit_logger.log_privacy_event('disclosure', self.session.id, round_number, {
            'privacy_budget': config.privacy_budget,
            'sensitivity': self.settings.sensitivity,
            'naive_cumulative_budget': self.privacy_engine.budget_tracker.naive_cumulative_budget
        })

    async def _finalize(self):
        """Persist the final model and complete the session."""
        session = self.session
        self._set_state(OrchestratorState.FINALIZING)

        version = self.base_version.bump_patch()
        if self.model_store is not None:
            weights = self.trainer.extract_weights(self.model)
            await asyncio.to_thread(
                self.model_store.store_snapshot,
                session.model_type, str(version), weights, self._last_loss, session.id
            )

        session.model_version = str(version)
        session.transition_to(SessionStatus.COMPLETED)
        self._set_state(OrchestratorState.COMPLETED)
        self._record_session()

        if self.audit_logger:
            self.audit_logger.log_session_event(session.id, session.status.value, f"model version {version}")
        log_federated_event(logger, 'info', f"Session completed after {session.rounds_completed} rounds, "
                                            f"model version {version}",
                            session_id=session.id, round_number=session.current_round)

    def _fail(self, error: BaseException):
        session = self.session
        reason = f"{type(error).__name__}: {error}"
        session.last_error = reason
        if not session.status.is_terminal:
            session.transition_to(SessionStatus.FAILED)
        self._set_state(OrchestratorState.FAILED)
        self._record_session()

        if self.audit_logger:
            self.audit_logger.log_session_event(session.id, session.status.value, reason)
        log_federated_event(logger, 'error', f"Session failed: {reason}",
                            session_id=session.id, round_number=session.current_round)

    def _cancel(self, reason: str):
        session = self.session
        if session.status.is_terminal:
            return
        session.last_error = reason
        session.transition_to(SessionStatus.CANCELLED)
        self._set_state(OrchestratorState.CANCELLED)
        self._record_session()

        if self.audit_logger:
            self.audit_logger.log_session_event(session.id, session.status.value, reason)
        log_federated_event(logger, 'info', f"Session cancelled: {reason}",
                            session_id=session.id, round_number=session.current_round)

    def _record_session(self):
        if self.model_store is None:
            return
        try:
            self.model_store.record_session(self.session.to_dict())
        except Exception as e:
            logger.warning(f"Failed to record session {self.session.id}: {e}")

    def _release(self):
        released = self.key_manager.release(self.session.id)
        self.transport.release(self.session.id)
        logger.debug(f"Released {released} channel(s) for session {self.session.id}")

    def get_status(self) -> Dict[str, Any]:
        """Get orchestrator status."""
        return {
            'session_id': self.session.id,
            'state': self.state.value,
            'status': self.session.status.value,
            'current_round': self._current_round,
            'total_rounds': self.total_rounds,
            'progress': self._progress,
            'convergence': self.monitor.get_convergence_summary(),
            'failures': self.failure_handler.get_summary(self.session.id),
            'privacy': self.privacy_engine.get_privacy_analysis()
        }
