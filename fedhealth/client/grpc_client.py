"""
gRPC client implementation for federated health learning.
Submits encrypted updates to the coordinator server.
"""

from typing import List, Optional, Tuple
import logging

import grpc

from ..shared.errors import (
    EncryptionError, InvalidSignature, NetworkError, RoundMismatchError, SessionStateError
)
from ..shared.interfaces import CoordinatorServiceInterface
from ..shared.models import CoordinatorResponse, FederatedMessage
from ..shared.serialization import FederatedMessageSerializer

logger = logging.getLogger(__name__)

SERVICE_NAME = 'fedhealth.Coordinator'
SUBMIT_METHOD = f'/{SERVICE_NAME}/SubmitUpdate'

DEFAULT_CHANNEL_OPTIONS: List[Tuple[str, object]] = [
    ('grpc.keepalive_time_ms', 30000),
    ('grpc.keepalive_timeout_ms', 5000),
    ('grpc.keepalive_permit_without_calls', True),
    ('grpc.max_receive_message_length', 100 * 1024 * 1024),  # 100MB
    ('grpc.max_send_message_length', 100 * 1024 * 1024),     # 100MB
]


def map_rpc_error(error: grpc.RpcError) -> Exception:
    """Translate a gRPC status into the client error taxonomy."""
    code = error.code() if hasattr(error, 'code') else None
    details = error.details() if hasattr(error, 'details') else str(error)

    if code in (grpc.StatusCode.PERMISSION_DENIED, grpc.StatusCode.UNAUTHENTICATED):
        return InvalidSignature(f"Coordinator rejected update: {details}")
    if code == grpc.StatusCode.FAILED_PRECONDITION:
        return EncryptionError(f"Coordinator could not decrypt update: {details}")
    if code == grpc.StatusCode.OUT_OF_RANGE:
        return RoundMismatchError(f"Coordinator no longer holds the round: {details}")
    return NetworkError(f"Coordinator call failed ({code}): {details}")


class GrpcCoordinatorClient(CoordinatorServiceInterface):
    """Coordinator service reached over gRPC with JSON-encoded messages."""

    def __init__(self, server_address: str, options: Optional[List[Tuple[str, object]]] = None):
        """
        Initialize gRPC coordinator client.

        Args:
            server_address: Coordinator server address (host:port)
            options: gRPC channel options
        """
        self.server_address = server_address
        self.options = options if options is not None else DEFAULT_CHANNEL_OPTIONS
        self.channel: Optional[grpc.aio.Channel] = None
        self._submit = None

    async def connect(self):
        """Open the channel to the coordinator."""
        if self.channel is not None:
            return
        logger.info(f"Connecting to coordinator at {self.server_address}")
        self.channel = grpc.aio.insecure_channel(self.server_address, options=self.options)
        self._submit = self.channel.unary_unary(
            SUBMIT_METHOD,
            request_serializer=FederatedMessageSerializer.encode_message,
            response_deserializer=FederatedMessageSerializer.decode_response,
        )

    async def close(self):
        """Close the channel."""
        if self.channel is not None:
            await self.channel.close()
            logger.info("Coordinator channel closed")
        self.channel = None
        self._submit = None

    async def submit(self, message: FederatedMessage) -> CoordinatorResponse:
        if self._submit is None:
            raise SessionStateError("Coordinator client is not connected")
        try:
            return await self._submit(message)
        except grpc.RpcError as e:
            raise map_rpc_error(e)

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
