"""
Reference coordinator service for federated health learning.
Verifies, decrypts and aggregates participant updates per session round.
"""

import asyncio
import hashlib
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
import logging

from ..aggregation.fedavg import FedAvgAggregator
from ..shared.compression import LZ4Compressor
from ..shared.crypto import AGGREGATE_LABEL, UPDATE_LABEL, KeyManager, SecureChannel, message_header
from ..shared.errors import InvalidSignature, NetworkError, RoundMismatchError
from ..shared.interfaces import AggregationServiceInterface, CoordinatorServiceInterface
from ..shared.logging_config import AuditLogger
from ..shared.models import CoordinatorResponse, FederatedMessage, ModelUpdate
from ..shared.serialization import ModelUpdateSerializer

logger = logging.getLogger(__name__)


@dataclass
class RoundState:
    """Updates collected for one (session, round)."""
    updates: Dict[str, ModelUpdate] = field(default_factory=dict)
    result: Optional[ModelUpdate] = None
    ready: asyncio.Event = field(default_factory=asyncio.Event)


class CoordinatorService(CoordinatorServiceInterface):
    """
    In-process coordinator.

    A round is aggregated once ``quorum`` participants have contributed, and
    its aggregate is fixed from then on: later submissions for that round
    are answered with the same aggregate. Replies are cached per
    (session, round, participant) together with a digest of the received
    message, so a verbatim resend is answered with the identical reply.

    Only the newest ``retained_rounds`` rounds of a session are kept, and a
    session idle for ``session_ttl`` seconds is forgotten together with its
    key material.
    """

    def __init__(self,
                 key_manager: KeyManager,
                 aggregator: Optional[AggregationServiceInterface] = None,
                 endpoint: str = "coordinator",
                 quorum: int = 1,
                 quorum_timeout: float = 30.0,
                 retained_rounds: int = 2,
                 session_ttl: float = 3600.0,
                 compressor: Optional[LZ4Compressor] = None,
                 audit_logger: Optional[AuditLogger] = None):
        """
        Initialize coordinator service.

        Args:
            key_manager: Channels shared with participants
            aggregator: Aggregation strategy (FedAvg if None)
            endpoint: Endpoint name participants use for the coordinator
            quorum: Updates required before a round is aggregated
            quorum_timeout: Time a submission waits for the quorum
            retained_rounds: Newest rounds of a session kept for late resends
            session_ttl: Idle time after which a session is forgotten
            compressor: Payload compressor
            audit_logger: Optional security audit sink
        """
        if quorum < 1:
            raise ValueError("quorum must be at least 1")
        if retained_rounds < 1:
            raise ValueError("retained_rounds must be at least 1")
        if session_ttl <= quorum_timeout:
            raise ValueError("session_ttl must exceed quorum_timeout")

        self.key_manager = key_manager
        self.aggregator = aggregator or FedAvgAggregator()
        self.endpoint = endpoint
        self.quorum = quorum
        self.quorum_timeout = quorum_timeout
        self.retained_rounds = retained_rounds
        self.session_ttl = session_ttl
        self.compressor = compressor or LZ4Compressor()
        self.audit_logger = audit_logger
        self.serializer = ModelUpdateSerializer()

        self._rounds: Dict[Tuple[str, int], RoundState] = {}
        self._replies: Dict[Tuple[str, int, str], Tuple[str, CoordinatorResponse]] = {}
        self._last_seen: Dict[str, float] = {}
        self._latest_round: Dict[str, int] = {}
        self._lock = asyncio.Lock()

        self.stats = {'submissions': 0, 'duplicates': 0, 'late': 0, 'rejected': 0,
                      'aggregations': 0, 'evicted_rounds': 0, 'expired_sessions': 0}

    @staticmethod
    def _digest(message: FederatedMessage) -> str:
        return hashlib.sha256(message.update + message.signature).hexdigest()

    async def _channel(self, session_id: str) -> SecureChannel:
        if not self.key_manager.has_channel(session_id, self.endpoint):
            return await self.key_manager.establish_channel(session_id, self.endpoint)
        return self.key_manager.get_channel(session_id, self.endpoint)

    async def submit(self, message: FederatedMessage) -> CoordinatorResponse:
        """
        Accept one participant update and answer with the round aggregate.

        Raises:
            InvalidSignature: If the update signature does not verify
            DecryptionError: If the update cannot be decrypted
            RoundMismatchError: If the round is older than the retained window
            NetworkError: If the quorum is not reached in time
        """
        session_id, round_number = message.session_id, message.round
        participant = message.participant_id or "anonymous"
        reply_key = (session_id, round_number, participant)
        digest = self._digest(message)

        self.stats['submissions'] += 1
        self._expire_idle_sessions(exclude=session_id)
        self._last_seen[session_id] = time.monotonic()

        cached = self._replies.get(reply_key)
        if cached is not None and cached[0] == digest:
            self.stats['duplicates'] += 1
            logger.info(f"Duplicate submission from {participant} for session {session_id} "
                        f"round {round_number}; returning cached reply")
            return cached[1]

        channel = await self._channel(session_id)
        header = message_header(UPDATE_LABEL, session_id, round_number)
        try:
            channel.verify(header + message.update, message.signature)
        except InvalidSignature:
            self.stats['rejected'] += 1
            if self.audit_logger:
                self.audit_logger.log_security_event('invalid_update_signature', 'high', {
                    'session_id': session_id,
                    'round_number': round_number,
                    'participant_id': participant
                })
            raise

        payload = self.compressor.decompress(channel.decrypt(message.update, header))
        update = self.serializer.deserialize_update(payload)

        async with self._lock:
            latest = self._latest_round.get(session_id)
            if latest is not None and round_number <= latest - self.retained_rounds:
                raise RoundMismatchError(f"Round {round_number} of session {session_id} is no longer held; "
                                         f"latest aggregated round is {latest}")
            state = self._rounds.setdefault((session_id, round_number), RoundState())
            if state.ready.is_set():
                self.stats['late'] += 1
                logger.info(f"Round {round_number} of session {session_id} already aggregated; "
                            f"answering {participant} with the existing aggregate")
            else:
                state.updates[participant] = update
                if len(state.updates) >= self.quorum:
                    state.result = self.aggregator.aggregate_updates(list(state.updates.values()))
                    self.stats['aggregations'] += 1
                    state.ready.set()
                    if latest is None or round_number > latest:
                        self._latest_round[session_id] = round_number
                        self._evict_old_rounds(session_id, round_number)

        try:
            await asyncio.wait_for(state.ready.wait(), timeout=self.quorum_timeout)
        except asyncio.TimeoutError:
            raise NetworkError(f"Quorum of {self.quorum} not reached for session {session_id} "
                               f"round {round_number} within {self.quorum_timeout}s")

        response = self._build_reply(channel, session_id, round_number, state.result)
        if (session_id, round_number) in self._rounds:
            self._replies[reply_key] = (digest, response)
        logger.debug(f"Answered {participant} for session {session_id} round {round_number}")
        return response

    def _build_reply(self, channel: SecureChannel, session_id: str, round_number: int,
                     aggregated: ModelUpdate) -> CoordinatorResponse:
        header = message_header(AGGREGATE_LABEL, session_id, round_number)
        compressed, _ = self.compressor.compress(self.serializer.serialize_update(aggregated))
        ciphertext = channel.encrypt(compressed, header)
        return CoordinatorResponse(
            session_id=session_id,
            round=round_number,
            aggregated_update=ciphertext,
            signature=channel.sign(header + ciphertext)
        )

    def _evict_old_rounds(self, session_id: str, latest_round: int) -> int:
        """Drop rounds and replies older than the retained window."""
        oldest_kept = latest_round - self.retained_rounds + 1
        stale = [k for k in self._rounds if k[0] == session_id and k[1] < oldest_kept]
        for key in stale:
            del self._rounds[key]
        for key in [k for k in self._replies if k[0] == session_id and k[1] < oldest_kept]:
            del self._replies[key]
        if stale:
            self.stats['evicted_rounds'] += len(stale)
            logger.debug(f"Evicted {len(stale)} round(s) of session {session_id} before round {oldest_kept}")
        return len(stale)

    def _expire_idle_sessions(self, exclude: Optional[str] = None) -> int:
        now = time.monotonic()
        idle = [sid for sid, seen in self._last_seen.items()
                if sid != exclude and now - seen > self.session_ttl]
        for session_id in idle:
            logger.info(f"Session {session_id} idle for more than {self.session_ttl}s; closing")
            self.close_session(session_id)
            self.stats['expired_sessions'] += 1
        return len(idle)

    def close_session(self, session_id: str) -> int:
        """Forget all state held for a session."""
        rounds = [k for k in self._rounds if k[0] == session_id]
        for key in rounds:
            del self._rounds[key]
        for key in [k for k in self._replies if k[0] == session_id]:
            del self._replies[key]
        self._last_seen.pop(session_id, None)
        self._latest_round.pop(session_id, None)
        self.key_manager.release(session_id)
        return len(rounds)

    def get_stats(self) -> Dict[str, Any]:
        """Get coordinator statistics."""
        return {
            **self.stats,
            'open_rounds': len(self._rounds),
            'open_sessions': len(self._last_seen),
            'quorum': self.quorum
        }
