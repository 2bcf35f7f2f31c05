"""
gRPC server implementation for the federated health learning coordinator.
Exposes the coordinator service through generic handlers with JSON messages.
"""

from typing import Any, Dict, Optional
import logging

import grpc

from ..client.grpc_client import SERVICE_NAME
from ..shared.errors import (
    CompressionError, DecryptionError, EncryptionError, InvalidSignature, KeyExchangeError,
    NetworkError, RoundMismatchError, SerializationError
)
from ..shared.models import CoordinatorResponse, FederatedMessage
from ..shared.serialization import FederatedMessageSerializer
from .service import CoordinatorService

logger = logging.getLogger(__name__)


def _status_for(error: Exception) -> grpc.StatusCode:
    if isinstance(error, InvalidSignature):
        return grpc.StatusCode.PERMISSION_DENIED
    if isinstance(error, (DecryptionError, EncryptionError, KeyExchangeError)):
        return grpc.StatusCode.FAILED_PRECONDITION
    if isinstance(error, (SerializationError, CompressionError)):
        return grpc.StatusCode.INVALID_ARGUMENT
    if isinstance(error, RoundMismatchError):
        return grpc.StatusCode.OUT_OF_RANGE
    if isinstance(error, NetworkError):
        return grpc.StatusCode.DEADLINE_EXCEEDED
    return grpc.StatusCode.INTERNAL


class CoordinatorServicer:
    """gRPC servicer delegating to a CoordinatorService."""

    def __init__(self, coordinator: CoordinatorService):
        self.coordinator = coordinator

    async def SubmitUpdate(self, request: FederatedMessage,
                           context: grpc.aio.ServicerContext) -> CoordinatorResponse:
        """Handle an encrypted update submission."""
        try:
            return await self.coordinator.submit(request)
        except Exception as e:
            status = _status_for(e)
            logger.warning(f"SubmitUpdate for session {request.session_id} round {request.round} "
                           f"failed with {status.name}: {e}")
            await context.abort(status, str(e))

    def handler(self) -> grpc.GenericRpcHandler:
        return grpc.method_handlers_generic_handler(SERVICE_NAME, {
            'SubmitUpdate': grpc.unary_unary_rpc_method_handler(
                self.SubmitUpdate,
                request_deserializer=FederatedMessageSerializer.decode_message,
                response_serializer=FederatedMessageSerializer.encode_response,
            )
        })


class CoordinatorGRPCServer:
    """Coordinator gRPC server manager."""

    def __init__(self, coordinator: CoordinatorService, host: str = '0.0.0.0', port: int = 50051):
        """
        Initialize coordinator gRPC server.

        Args:
            coordinator: Coordinator service to expose
            host: Interface to bind
            port: Port to listen on (0 picks a free port)
        """
        self.coordinator = coordinator
        self.host = host
        self.port = port
        self.server: Optional[grpc.aio.Server] = None
        self.servicer = CoordinatorServicer(coordinator)

    async def start(self) -> int:
        """
        Start the gRPC server.

        Returns:
            int: Bound port
        """
        try:
            self.server = grpc.aio.server(options=[
                ('grpc.keepalive_time_ms', 30000),
                ('grpc.keepalive_timeout_ms', 5000),
                ('grpc.keepalive_permit_without_calls', True),
                ('grpc.max_receive_message_length', 100 * 1024 * 1024),  # 100MB
                ('grpc.max_send_message_length', 100 * 1024 * 1024),     # 100MB
            ])
            self.server.add_generic_rpc_handlers((self.servicer.handler(),))

            listen_addr = f'{self.host}:{self.port}'
            self.port = self.server.add_insecure_port(listen_addr)

            await self.server.start()
            logger.info(f"Coordinator gRPC server started on {self.host}:{self.port}")
            return self.port

        except Exception as e:
            logger.error(f"Failed to start coordinator gRPC server: {e}")
            raise

    async def stop(self, grace_period: float = 5):
        """Stop the gRPC server."""
        if self.server:
            logger.info("Stopping coordinator gRPC server...")
            await self.server.stop(grace_period)
            self.server = None
            logger.info("Coordinator gRPC server stopped")

    async def wait_for_termination(self):
        """Wait for server termination."""
        if self.server:
            await self.server.wait_for_termination()

    def get_status(self) -> Dict[str, Any]:
        return {
            'address': f'{self.host}:{self.port}',
            'running': self.server is not None,
            'coordinator': self.coordinator.get_stats()
        }
