"""
Secure transport for federated health learning.
Encrypts, signs and exchanges model updates with the coordinator service.
"""

import asyncio
import time
from typing import Dict, Optional, Tuple
import logging

from ..shared.compression import LZ4Compressor
from ..shared.crypto import AGGREGATE_LABEL, UPDATE_LABEL, KeyManager, message_header
from ..shared.errors import InvalidSignature, NetworkError, RoundMismatchError
from ..shared.interfaces import CoordinatorServiceInterface
from ..shared.logging_config import AuditLogger, MetricsLogger
from ..shared.models import FederatedMessage, FederatedSession, ModelUpdate
from ..shared.serialization import ModelUpdateSerializer

logger = logging.getLogger(__name__)


class SecureTransport:
    """
    Exchanges privatized updates with the coordinator.

    The message built for a (session, round) is kept in an outbox until the
    exchange succeeds, so retrying the same update resends identical bytes
    and the coordinator can answer it idempotently.
    """

    def __init__(self,
                 coordinator: CoordinatorServiceInterface,
                 key_manager: KeyManager,
                 participant_id: str,
                 coordinator_endpoint: str = "coordinator",
                 timeout: float = 30.0,
                 compressor: Optional[LZ4Compressor] = None,
                 metrics_logger: Optional[MetricsLogger] = None,
                 audit_logger: Optional[AuditLogger] = None):
        """
        Initialize secure transport.

        Args:
            coordinator: Coordinator service collaborator
            key_manager: Holder of per-session secure channels
            participant_id: Identifier of this device
            coordinator_endpoint: Endpoint name of the coordinator channel
            timeout: Bound on one exchange, in seconds
            compressor: Payload compressor (LZ4 by default)
            metrics_logger: Optional communication metrics sink
            audit_logger: Optional security audit sink
        """
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        self.coordinator = coordinator
        self.key_manager = key_manager
        self.participant_id = participant_id
        self.coordinator_endpoint = coordinator_endpoint
        self.timeout = timeout
        self.compressor = compressor or LZ4Compressor()
        self.metrics_logger = metrics_logger
        self.audit_logger = audit_logger
        self.serializer = ModelUpdateSerializer()

        self._outbox: Dict[Tuple[str, int], Tuple[ModelUpdate, FederatedMessage]] = {}

    def build_message(self, update: ModelUpdate, session_id: str, round_number: int) -> FederatedMessage:
        """
        Serialize, compress, encrypt and sign an update.

        Raises:
            EncryptionError: If no channel exists or encryption fails
        """
        channel = self.key_manager.get_channel(session_id, self.coordinator_endpoint)
        header = message_header(UPDATE_LABEL, session_id, round_number)

        payload = self.serializer.serialize_update(update)
        compressed, metadata = self.compressor.compress(payload)
        ciphertext = channel.encrypt(compressed, header)
        signature = channel.sign(header + ciphertext)

        logger.debug(f"Built message for session {session_id} round {round_number}: "
                     f"{metadata['original_size']} -> {len(ciphertext)} bytes")

        return FederatedMessage(
            session_id=session_id,
            round=round_number,
            update=ciphertext,
            signature=signature,
            timestamp=time.time(),
            participant_id=self.participant_id
        )

    def _outgoing(self, update: ModelUpdate, session_id: str, round_number: int) -> FederatedMessage:
        key = (session_id, round_number)
        cached = self._outbox.get(key)
        if cached is not None and cached[0] is update:
            logger.info(f"Resending cached message for session {session_id} round {round_number}")
            return cached[1]

        message = self.build_message(update, session_id, round_number)
        self._outbox[key] = (update, message)
        return message

    async def _submit(self, message: FederatedMessage):
        try:
            return await asyncio.wait_for(self.coordinator.submit(message), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise NetworkError(f"Coordinator did not answer within {self.timeout}s")
        except (ConnectionError, OSError) as e:
            raise NetworkError(f"Coordinator exchange failed: {str(e)}")

    async def send(self, update: ModelUpdate, session: FederatedSession, round_number: int) -> ModelUpdate:
        """
        Send a privatized update and return the verified aggregated update.

        Args:
            update: Privatized local update
            session: Session the update belongs to
            round_number: Round the update is tagged with

        Returns:
            ModelUpdate: Decrypted aggregated update

        Raises:
            EncryptionError, DecryptionError, NetworkError, InvalidSignature,
            RoundMismatchError
        """
        session_id = session.id
        message = self._outgoing(update, session_id, round_number)

        start = time.perf_counter()
        try:
            response = await self._submit(message)
        except NetworkError:
            self._log_exchange(session_id, round_number, message, start, success=False)
            raise
        self._log_exchange(session_id, round_number, message, start, success=True)

        if response.session_id != session_id or response.round != round_number:
            raise RoundMismatchError(
                f"Reply for session {response.session_id} round {response.round} does not "
                f"match session {session_id} round {round_number}"
            )

        channel = self.key_manager.get_channel(session_id, self.coordinator_endpoint)
        header = message_header(AGGREGATE_LABEL, session_id, round_number)

        try:
            channel.verify(header + response.aggregated_update, response.signature)
        except InvalidSignature:
            if self.audit_logger:
                self.audit_logger.log_security_event('invalid_signature', 'high', {
                    'session_id': session_id,
                    'round_number': round_number
                })
            logger.error(f"Aggregated update signature rejected for session {session_id} round {round_number}")
            raise

        compressed = channel.decrypt(response.aggregated_update, header)
        aggregated = self.serializer.deserialize_update(self.compressor.decompress(compressed))

        self._outbox.pop((session_id, round_number), None)
        return aggregated

    def _log_exchange(self, session_id: str, round_number: int, message: FederatedMessage,
                      start: float, success: bool):
        if self.metrics_logger is None:
            return
        self.metrics_logger.log_communication_metrics(
            session_id=session_id,
            round_number=round_number,
            message_size_bytes=len(message.update) + len(message.signature),
            latency_ms=(time.perf_counter() - start) * 1000.0,
            success=success
        )

    def discard(self, session_id: str, round_number: int) -> bool:
        """Drop the cached message for a round so the next send rebuilds it."""
        return self._outbox.pop((session_id, round_number), None) is not None

    def pending(self, session_id: str) -> int:
        return sum(1 for sid, _ in self._outbox if sid == session_id)

    def release(self, session_id: str) -> int:
        """Drop every cached message of a session."""
        keys = [k for k in self._outbox if k[0] == session_id]
        for key in keys:
            del self._outbox[key]
        return len(keys)
