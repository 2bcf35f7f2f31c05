"""
Round failure handling for the federated health learning client.
Classifies failures raised inside a round and decides how to recover.
"""

from collections import defaultdict, deque
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
import logging

from ..shared.errors import (
    CompressionError, DecryptionError, EncryptionError, InsufficientParticipants,
    InvalidSignature, KeyExchangeError, ModelNotLoaded, NetworkError, PrivacyError,
    RoundMismatchError, SerializationError, TrainingError
)

logger = logging.getLogger(__name__)


class FailureType(Enum):
    """Types of round failures."""
    NETWORK_ERROR = "network_error"
    ENCRYPTION_ERROR = "encryption_error"
    DECRYPTION_ERROR = "decryption_error"
    INVALID_SIGNATURE = "invalid_signature"
    ROUND_MISMATCH = "round_mismatch"
    TRAINING_ERROR = "training_error"
    PAYLOAD_ERROR = "payload_error"
    PRIVACY_ERROR = "privacy_error"
    KEY_EXCHANGE_ERROR = "key_exchange_error"
    MODEL_NOT_LOADED = "model_not_loaded"
    INSUFFICIENT_PARTICIPANTS = "insufficient_participants"
    UNKNOWN = "unknown"


class FailureAction(Enum):
    """Recovery actions for a round failure."""
    RETRY_MESSAGE = "retry_message"
    REBUILD_MESSAGE = "rebuild_message"
    RETRY_ROUND = "retry_round"
    FAIL_SESSION = "fail_session"


# Ordered: subclasses before base classes.
_CLASSIFICATION = (
    (InvalidSignature, FailureType.INVALID_SIGNATURE, FailureAction.FAIL_SESSION),
    (RoundMismatchError, FailureType.ROUND_MISMATCH, FailureAction.FAIL_SESSION),
    (ModelNotLoaded, FailureType.MODEL_NOT_LOADED, FailureAction.FAIL_SESSION),
    (InsufficientParticipants, FailureType.INSUFFICIENT_PARTICIPANTS, FailureAction.FAIL_SESSION),
    (NetworkError, FailureType.NETWORK_ERROR, FailureAction.RETRY_MESSAGE),
    (EncryptionError, FailureType.ENCRYPTION_ERROR, FailureAction.REBUILD_MESSAGE),
    (DecryptionError, FailureType.DECRYPTION_ERROR, FailureAction.REBUILD_MESSAGE),
    (KeyExchangeError, FailureType.KEY_EXCHANGE_ERROR, FailureAction.REBUILD_MESSAGE),
    (TrainingError, FailureType.TRAINING_ERROR, FailureAction.RETRY_ROUND),
    (SerializationError, FailureType.PAYLOAD_ERROR, FailureAction.RETRY_ROUND),
    (CompressionError, FailureType.PAYLOAD_ERROR, FailureAction.RETRY_ROUND),
    (PrivacyError, FailureType.PRIVACY_ERROR, FailureAction.RETRY_ROUND),
)


class RoundFailure:
    """Represents one failed attempt within a round."""

    def __init__(self,
                 session_id: str,
                 round_number: int,
                 failure_type: FailureType,
                 action: FailureAction,
                 attempt: int,
                 details: str = ""):
        self.session_id = session_id
        self.round_number = round_number
        self.failure_type = failure_type
        self.action = action
        self.attempt = attempt
        self.details = details
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert failure to dictionary."""
        return {
            'session_id': self.session_id,
            'round_number': self.round_number,
            'failure_type': self.failure_type.value,
            'action': self.action.value,
            'attempt': self.attempt,
            'details': self.details,
            'timestamp': self.timestamp.isoformat()
        }


class FailureHandler:
    """
    Decides the recovery action for round failures and bounds retries.

    Integrity failures (bad signature, wrong round) are fatal on first
    sight. Transient failures are retried until ``max_retries`` retries of
    the same round have been spent.
    """

    def __init__(self, max_retries: int = 3, history_size: int = 100):
        """
        Initialize failure handler.

        Args:
            max_retries: Retries allowed per round after the first attempt
            history_size: Number of failures kept in history
        """
        self.max_retries = max_retries
        self.failure_history = deque(maxlen=history_size)
        self._attempts: Dict[tuple, int] = defaultdict(int)

    @staticmethod
    def classify(error: BaseException) -> tuple:
        """Map an exception to (FailureType, FailureAction)."""
        for error_type, failure_type, action in _CLASSIFICATION:
            if isinstance(error, error_type):
                return failure_type, action
        return FailureType.UNKNOWN, FailureAction.FAIL_SESSION

    def record(self, session_id: str, round_number: int, error: BaseException) -> RoundFailure:
        """
        Record a failure and decide what to do next.

        The returned failure's action is FAIL_SESSION either when the
        failure is fatal or when the round's retries are exhausted.
        """
        failure_type, action = self.classify(error)
        key = (session_id, round_number)
        self._attempts[key] += 1
        attempt = self._attempts[key]

        if action != FailureAction.FAIL_SESSION and attempt > self.max_retries:
            logger.warning(f"Retries exhausted for session {session_id} round {round_number} "
                           f"after {attempt} failures")
            action = FailureAction.FAIL_SESSION

        failure = RoundFailure(session_id, round_number, failure_type, action, attempt, str(error))
        self.failure_history.append(failure)

        logger.warning(f"Round failure in session {session_id} round {round_number}: "
                       f"{failure_type.value} -> {action.value} (attempt {attempt})")
        return failure

    def should_retry(self, failure: RoundFailure) -> bool:
        return failure.action != FailureAction.FAIL_SESSION

    def attempts(self, session_id: str, round_number: int) -> int:
        return self._attempts.get((session_id, round_number), 0)

    def reset_round(self, session_id: str, round_number: int):
        self._attempts.pop((session_id, round_number), None)

    def get_summary(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        """Get failure statistics, optionally for one session."""
        failures = [f for f in self.failure_history
                    if session_id is None or f.session_id == session_id]

        by_type: Dict[str, int] = defaultdict(int)
        for failure in failures:
            by_type[failure.failure_type.value] += 1

        return {
            'total_failures': len(failures),
            'failures_by_type': dict(by_type),
            'recent_failures': [f.to_dict() for f in failures[-10:]]
        }
