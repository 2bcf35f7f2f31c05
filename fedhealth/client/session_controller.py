"""
Session lifecycle management for federated health learning.
Creates sessions, prepares their local model and keys, and runs them.
"""

import asyncio
from typing import Callable, Dict, Iterable, List, Optional, AsyncIterator
import logging

from ..shared.config import OrchestratorSettings
from ..shared.crypto import KeyManager
from ..shared.errors import InsufficientParticipants, KeyExchangeError, SessionStateError
from ..shared.interfaces import (
    LocalTrainerInterface, ModelStoreInterface, SampleProviderInterface
)
from ..shared.logging_config import AuditLogger, MetricsLogger
from ..shared.models import (
    FederatedConfig, FederatedSession, ModelType, SessionStatus, TrainingProgress
)
from ..shared.models_pytorch import weights_compatible
from ..shared.privacy import create_privacy_engine
from .round_orchestrator import RoundOrchestrator
from .secure_transport import SecureTransport

logger = logging.getLogger(__name__)

MIN_PARTICIPANTS = 3


class SessionController:
    """
    Entry point for creating and running federated sessions.

    One controller serves many sessions; each session gets its own trainer,
    model, privacy engine and orchestrator, and runs independently.
    """

    def __init__(self,
                 trainer_factory: Callable[[ModelType], LocalTrainerInterface],
                 sample_provider: SampleProviderInterface,
                 key_manager: KeyManager,
                 transport: SecureTransport,
                 model_store: Optional[ModelStoreInterface] = None,
                 settings: Optional[OrchestratorSettings] = None,
                 metrics_logger: Optional[MetricsLogger] = None,
                 audit_logger: Optional[AuditLogger] = None):
        """
        Initialize session controller.

        Args:
            trainer_factory: Allocates a local trainer for a model type
            sample_provider: Source of local samples
            key_manager: Owner of per-session secure channels
            transport: Secure transport to the coordinator
            model_store: Optional snapshot store for restore and versioning
            settings: Round loop settings
            metrics_logger: Optional metrics sink
            audit_logger: Optional audit sink
        """
        self.trainer_factory = trainer_factory
        self.sample_provider = sample_provider
        self.key_manager = key_manager
        self.transport = transport
        self.model_store = model_store
        self.settings = settings or OrchestratorSettings()
        self.metrics_logger = metrics_logger
        self.audit_logger = audit_logger

        self._sessions: Dict[str, FederatedSession] = {}
        self._orchestrators: Dict[str, RoundOrchestrator] = {}
        self._started = set()

    async def initialize(self,
                         model_type: ModelType,
                         participants: Iterable[str],
                         configuration: Optional[FederatedConfig] = None) -> FederatedSession:
        """
        Create a session and prepare everything it needs to train.

        Args:
            model_type: Model family to train
            participants: Participant identifiers (at least three distinct)
            configuration: Session hyperparameters (defaults if None)

        Returns:
            FederatedSession: New session in ``initializing``

        Raises:
            InsufficientParticipants: If fewer than three distinct participants
            KeyExchangeError: If any secure channel cannot be established
        """
        unique = frozenset(participants)
        if len(unique) < MIN_PARTICIPANTS:
            raise InsufficientParticipants(len(unique), MIN_PARTICIPANTS)

        session = FederatedSession(
            model_type=model_type,
            participants=unique,
            configuration=configuration or FederatedConfig()
        )

        trainer = self.trainer_factory(model_type)
        samples = await asyncio.to_thread(self.sample_provider.load_samples, model_type)
        model = await asyncio.to_thread(trainer.build_model, samples.num_features)
        base_version = await asyncio.to_thread(self._restore_snapshot, trainer, model, model_type)

        endpoints = sorted(unique) + [self.transport.coordinator_endpoint]
        try:
            for endpoint in endpoints:
                await self.key_manager.establish_channel(session.id, endpoint)
        except KeyExchangeError:
            self.key_manager.release(session.id)
            raise

        privacy_engine = create_privacy_engine(
            session.configuration.privacy_budget,
            self.settings.sensitivity,
            self.settings.noise_seed
        )
        orchestrator = RoundOrchestrator(
            session=session,
            trainer=trainer,
            model=model,
            samples=samples,
            privacy_engine=privacy_engine,
            transport=self.transport,
            key_manager=self.key_manager,
            settings=self.settings,
            model_store=self.model_store,
            base_version=base_version,
            metrics_logger=self.metrics_logger,
            audit_logger=self.audit_logger
        )

        self._sessions[session.id] = session
        self._orchestrators[session.id] = orchestrator

        if self.audit_logger:
            self.audit_logger.log_session_event(session.id, session.status.value,
                                                f"{len(unique)} participants")
        logger.info(f"Session {session.id} initialized for {model_type.value} "
                    f"with {len(unique)} participants")
        return session

    def _restore_snapshot(self, trainer: LocalTrainerInterface, model, model_type: ModelType) -> Optional[str]:
        """Load the latest stored model into a fresh model when compatible."""
        if self.model_store is None:
            return None

        latest = self.model_store.load_latest(model_type)
        if latest is None:
            return None

        version, weights = latest
        if not weights_compatible(model, weights):
            logger.warning(f"Stored {model_type.value} model v{version} does not match the local "
                           f"feature layout; starting from a fresh model")
            return version

        trainer.apply_weights(weights, model)
        logger.info(f"Restored {model_type.value} model v{version}")
        return version

    def _orchestrator(self, session: FederatedSession) -> RoundOrchestrator:
        orchestrator = self._orchestrators.get(session.id)
        if orchestrator is None:
            raise SessionStateError(f"Unknown session {session.id}")
        return orchestrator

    def start(self, session: FederatedSession) -> AsyncIterator[TrainingProgress]:
        """
        Start training a session.

        Returns:
            Async iterator of progress events, one per completed round
        """
        orchestrator = self._orchestrator(session)
        if session.status != SessionStatus.INITIALIZING or session.id in self._started:
            raise SessionStateError(f"Session {session.id} cannot start from {session.status.value}")
        self._started.add(session.id)
        return orchestrator.run()

    def stop(self, session: FederatedSession):
        """Request cancellation of a session."""
        orchestrator = self._orchestrator(session)
        if session.status == SessionStatus.INITIALIZING and session.id not in self._started:
            session.last_error = "Stopped before training started"
            session.transition_to(SessionStatus.CANCELLED)
            self.key_manager.release(session.id)
            self.transport.release(session.id)
            logger.info(f"Session {session.id} cancelled before start")
            return
        orchestrator.stop()

    def get_session(self, session_id: str) -> Optional[FederatedSession]:
        return self._sessions.get(session_id)

    def list_sessions(self) -> List[FederatedSession]:
        return list(self._sessions.values())

    def get_status(self, session: FederatedSession) -> Dict:
        return self._orchestrator(session).get_status()
