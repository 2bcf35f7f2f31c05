"""
Core interfaces and abstract base classes for the federated health learning client.
Defines contracts that external collaborators must implement.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import torch

from .models import (
    CoordinatorResponse, FederatedMessage, LocalSamples, ModelType, ModelUpdate,
    ModelWeights
)


class LocalTrainerInterface(ABC):
    """
    Interface for the local trainer driving on-device optimization.

    Implementations may be synchronous or return awaitables; they must not
    have side effects other than mutating the model passed in.
    """

    @abstractmethod
    def build_model(self, num_features: int) -> torch.nn.Module:
        """Create a fresh local model for the trainer's model type."""
        pass

    @abstractmethod
    def train(self,
              model: torch.nn.Module,
              samples: LocalSamples,
              epochs: int,
              learning_rate: float,
              batch_size: int) -> Tuple[ModelWeights, float]:
        """Train the model and return (updated weights, average loss)."""
        pass

    @abstractmethod
    def evaluate(self, model: torch.nn.Module, samples: LocalSamples) -> float:
        """Compute the model loss on the given samples."""
        pass

    @abstractmethod
    def extract_weights(self, model: torch.nn.Module) -> ModelWeights:
        """Get model parameters as an ordered list of tensors."""
        pass

    @abstractmethod
    def apply_weights(self, weights: ModelWeights, model: torch.nn.Module) -> None:
        """Replace all model parameters; must not partially apply."""
        pass


class SampleProviderInterface(ABC):
    """Interface for the source of pre-extracted local samples."""

    @abstractmethod
    def load_samples(self, model_type: ModelType) -> LocalSamples:
        """Load local feature/label samples for a model type."""
        pass


class KeyStorageInterface(ABC):
    """Interface for durable storage of cryptographic key material."""

    @abstractmethod
    def store(self, key_id: str, data: bytes) -> None:
        """Durably store key material under an identifier."""
        pass

    @abstractmethod
    def load(self, key_id: str) -> Optional[bytes]:
        """Load key material, or None if it does not exist."""
        pass

    @abstractmethod
    def delete(self, key_id: str) -> bool:
        """Delete key material. Returns True if something was removed."""
        pass


class KeyExchangeInterface(ABC):
    """Interface for establishing a shared secret with a remote endpoint."""

    @abstractmethod
    async def establish(self, session_id: str, endpoint: str) -> bytes:
        """Return the shared secret for a (session, endpoint) pair."""
        pass


class ModelStoreInterface(ABC):
    """Interface for persisting versioned model snapshots."""

    @abstractmethod
    def store_snapshot(self,
                       model_type: ModelType,
                       version: str,
                       weights: ModelWeights,
                       loss: Optional[float] = None,
                       session_id: Optional[str] = None) -> None:
        """Durably store a model snapshot."""
        pass

    @abstractmethod
    def load_latest(self, model_type: ModelType) -> Optional[Tuple[str, ModelWeights]]:
        """Load the latest (version, weights) snapshot for a model type."""
        pass

    @abstractmethod
    def latest_version(self, model_type: ModelType) -> Optional[str]:
        """Get the latest stored version string for a model type."""
        pass

    @abstractmethod
    def record_session(self, session_data: Dict[str, Any]) -> None:
        """Persist a session lifecycle record."""
        pass


class CoordinatorServiceInterface(ABC):
    """Interface for the remote coordinator that aggregates updates."""

    @abstractmethod
    async def submit(self, message: FederatedMessage) -> CoordinatorResponse:
        """
        Submit a signed, encrypted update and return the aggregated reply.

        Resending an identical message for the same (session, round) must not
        change coordinator state.
        """
        pass


class AggregationServiceInterface(ABC):
    """Interface for coordinator-side aggregation strategies."""

    @abstractmethod
    def aggregate_updates(self,
                          updates: List[ModelUpdate],
                          weights: Optional[List[float]] = None) -> ModelUpdate:
        """Aggregate participant updates into one update."""
        pass
