"""
Coordinator service main entry point.
Starts the reference coordinator behind a gRPC server.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from ..aggregation.fedavg import FedAvgAggregator
from ..shared.config import load_config
from ..shared.crypto import KeyManager, StoredKeyExchange
from ..shared.errors import FederatedLearningError
from ..shared.logging_config import AuditLogger, configure_logging_from_config
from ..shared.storage import FileKeyStorage
from .grpc_server import CoordinatorGRPCServer
from .service import CoordinatorService

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Federated Health Learning Coordinator')
    parser.add_argument('--config', '-c',
                        default='config/coordinator.yaml',
                        help='Configuration file path')
    parser.add_argument('--port', type=int,
                        help='gRPC port (overrides config)')
    return parser.parse_args(argv)


async def run_coordinator(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    configure_logging_from_config(config, 'coordinator')

    coordinator_config = config.get('coordinator', {})
    log_dir = config.get('logging', {}).get('log_dir')

    service = CoordinatorService(
        key_manager=KeyManager(StoredKeyExchange(FileKeyStorage(config['storage']['key_dir']))),
        aggregator=FedAvgAggregator(),
        endpoint=coordinator_config.get('endpoint', 'coordinator'),
        quorum=coordinator_config.get('quorum', 1),
        quorum_timeout=coordinator_config.get('quorum_timeout', 30.0),
        retained_rounds=coordinator_config.get('retained_rounds', 2),
        session_ttl=coordinator_config.get('session_ttl', 3600.0),
        audit_logger=AuditLogger('coordinator', log_dir)
    )
    server = CoordinatorGRPCServer(
        service,
        host=coordinator_config.get('host', '0.0.0.0'),
        port=args.port or coordinator_config.get('port', 50051)
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    await server.start()
    try:
        await stop_event.wait()
    finally:
        await server.stop()
        logger.info(f"Coordinator stopped: {service.get_stats()}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Console entry point."""
    args = parse_args(argv)
    try:
        return asyncio.run(run_coordinator(args))
    except FederatedLearningError as e:
        logger.error(f"Coordinator failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
