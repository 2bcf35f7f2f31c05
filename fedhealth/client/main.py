"""
Client service main entry point.
Runs one federated health learning session against a remote coordinator.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

from ..shared.config import (
    build_federated_config, build_orchestrator_settings, load_config
)
from ..shared.crypto import KeyManager, StoredKeyExchange
from ..shared.data_loader import InMemorySampleProvider, NumpySampleProvider, generate_synthetic_samples
from ..shared.database import ModelRepository, create_database_manager
from ..shared.errors import FederatedLearningError
from ..shared.logging_config import AuditLogger, MetricsLogger, configure_logging_from_config
from ..shared.models import ModelType, SessionStatus
from ..shared.storage import FileKeyStorage
from ..shared.training import create_local_trainer
from .grpc_client import GrpcCoordinatorClient
from .secure_transport import SecureTransport
from .session_controller import SessionController

logger = logging.getLogger(__name__)


class ClientService:
    """Wires the client components together from configuration."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        client_config = config['client']
        storage_config = config['storage']
        log_dir = config.get('logging', {}).get('log_dir')

        self.participant_id = client_config['participant_id']
        self.settings = build_orchestrator_settings(config)
        self.federated_config = build_federated_config(config)

        self.metrics_logger = MetricsLogger('client', log_dir)
        self.audit_logger = AuditLogger('client', log_dir)

        self.key_manager = KeyManager(StoredKeyExchange(FileKeyStorage(storage_config['key_dir'])))
        self.coordinator = GrpcCoordinatorClient(client_config['coordinator_address'])
        self.transport = SecureTransport(
            coordinator=self.coordinator,
            key_manager=self.key_manager,
            participant_id=self.participant_id,
            coordinator_endpoint=client_config.get('coordinator_endpoint', 'coordinator'),
            timeout=self.settings.round_timeout,
            metrics_logger=self.metrics_logger,
            audit_logger=self.audit_logger
        )
        self.model_store = ModelRepository(create_database_manager(storage_config['database_url']))

        self.controller = SessionController(
            trainer_factory=create_local_trainer,
            sample_provider=self._sample_provider(),
            key_manager=self.key_manager,
            transport=self.transport,
            model_store=self.model_store,
            settings=self.settings,
            metrics_logger=self.metrics_logger,
            audit_logger=self.audit_logger
        )
        self.session = None

        logger.info(f"Client service initialized with ID: {self.participant_id}")

    def _sample_provider(self):
        client_config = self.config['client']
        synthetic = client_config.get('synthetic_samples')
        if synthetic:
            model_type = ModelType(self.config['session']['model_type'])
            samples = generate_synthetic_samples(
                model_type,
                num_samples=synthetic.get('num_samples', 256),
                num_features=synthetic.get('num_features', 8),
                seed=synthetic.get('seed')
            )
            logger.info(f"Using {len(samples)} synthetic {model_type.value} samples")
            return InMemorySampleProvider({model_type: samples})
        return NumpySampleProvider(client_config['data_dir'])

    def stop(self):
        """Request cancellation of the running session."""
        if self.session is not None:
            self.controller.stop(self.session)

    async def run(self, participants: List[str]) -> SessionStatus:
        """Initialize and train one session to a terminal state."""
        model_type = ModelType(self.config['session']['model_type'])

        await self.coordinator.connect()
        try:
            self.session = await self.controller.initialize(model_type, participants, self.federated_config)
            logger.info(f"Session {self.session.id} created")

            async for progress in self.controller.start(self.session):
                logger.info(f"Round {progress.round + 1}/{progress.total_rounds} "
                            f"loss={progress.loss:.4f} progress={progress.progress_ratio:.0%}")

            if self.session.status == SessionStatus.COMPLETED:
                logger.info(f"Session completed, model version {self.session.model_version}")
            else:
                logger.error(f"Session ended {self.session.status.value}: {self.session.last_error}")
            return self.session.status
        finally:
            await self.coordinator.close()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Federated Health Learning Client')
    parser.add_argument('--config', '-c',
                        default='config/client.yaml',
                        help='Configuration file path')
    parser.add_argument('--participant-id',
                        help='Participant ID (overrides config)')
    parser.add_argument('--participants', nargs='+',
                        help='Session participant IDs (overrides config)')
    return parser.parse_args(argv)


async def run_client(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    if args.participant_id:
        config['client']['participant_id'] = args.participant_id
    configure_logging_from_config(config, 'client')

    participants = args.participants or config['session'].get('participants') or []
    service = ClientService(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, service.stop)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: service.stop())

    status = await service.run(participants)
    return 0 if status == SessionStatus.COMPLETED else 1


def main(argv: Optional[List[str]] = None) -> int:
    """Console entry point."""
    args = parse_args(argv)
    try:
        return asyncio.run(run_client(args))
    except FederatedLearningError as e:
        logger.error(f"Client failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
