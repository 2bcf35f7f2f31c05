"""
Exception hierarchy for the federated health learning client.
"""


class FederatedLearningError(Exception):
    """Base class for all federated learning errors."""
    pass


class InsufficientParticipants(FederatedLearningError):
    """Raised when a session is requested with too few participants."""

    def __init__(self, count: int, minimum: int):
        self.count = count
        self.minimum = minimum
        super().__init__(f"Insufficient participants: {count} < {minimum}")


class ModelNotLoaded(FederatedLearningError):
    """Raised when the local model is missing before training."""
    pass


class EncryptionError(FederatedLearningError):
    """Raised when an update cannot be encrypted or signed."""
    pass


class DecryptionError(FederatedLearningError):
    """Raised when an aggregated payload cannot be decrypted."""
    pass


class InvalidSignature(FederatedLearningError):
    """Raised when a payload fails integrity/authenticity verification."""
    pass


class RoundMismatchError(FederatedLearningError):
    """Raised when a reply does not belong to the expected session round."""
    pass


class NetworkError(FederatedLearningError):
    """Raised on transient transport failures, including timeouts."""
    pass


class KeyExchangeError(FederatedLearningError):
    """Raised when a secure channel cannot be established."""
    pass


class TrainingError(FederatedLearningError):
    """Raised when local training, evaluation or weight application fails."""
    pass


class PrivacyError(FederatedLearningError):
    """Raised for invalid differential privacy parameters."""
    pass


class SerializationError(FederatedLearningError):
    """Raised when payloads or wire messages cannot be (de)serialized."""
    pass


class CompressionError(FederatedLearningError):
    """Raised when payload compression fails."""
    pass


class SessionStateError(FederatedLearningError):
    """Raised on an invalid session status transition or lifecycle call."""
    pass


class ConfigurationError(FederatedLearningError):
    """Raised when configuration is missing or invalid."""
    pass
