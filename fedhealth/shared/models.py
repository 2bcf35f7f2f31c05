"""
Core data models for the federated health learning client.
Defines the primary data structures shared by the session, round and transport layers.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Any
from enum import Enum
import uuid

import numpy as np
import torch

from .errors import SessionStateError


class ModelType(Enum):
    """Model families that can be trained collaboratively."""
    CARDIOVASCULAR_RISK = "cardiovascular_risk"
    GLUCOSE_PREDICTION = "glucose_prediction"
    SLEEP_QUALITY = "sleep_quality"
    STRESS_DETECTION = "stress_detection"

    @property
    def task(self) -> str:
        """Learning task of the model family ("classification" or "regression")."""
        return _MODEL_TASKS[self]


_MODEL_TASKS = {
    ModelType.CARDIOVASCULAR_RISK: "classification",
    ModelType.GLUCOSE_PREDICTION: "regression",
    ModelType.SLEEP_QUALITY: "regression",
    ModelType.STRESS_DETECTION: "classification",
}


class SessionStatus(Enum):
    """Published status of a federated session."""
    INITIALIZING = "initializing"
    TRAINING = "training"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED)


# Status rank; a session may only move to a strictly higher rank.
_STATUS_RANK = {
    SessionStatus.INITIALIZING: 0,
    SessionStatus.TRAINING: 1,
    SessionStatus.COMPLETED: 2,
    SessionStatus.FAILED: 2,
    SessionStatus.CANCELLED: 2,
}


@dataclass(frozen=True)
class FederatedConfig:
    """Hyperparameters of a federated session, fixed for its lifetime."""
    max_rounds: int = 100
    local_epochs: int = 5
    learning_rate: float = 0.001
    convergence_threshold: float = 0.01
    privacy_budget: float = 1.0
    batch_size: int = 32

    def __post_init__(self):
        """Validate session hyperparameters."""
        if self.max_rounds <= 0:
            raise ValueError("max_rounds must be positive")
        if self.local_epochs <= 0:
            raise ValueError("local_epochs must be positive")
        if self.learning_rate <= 0:
            raise ValueError("learning_rate must be positive")
        if self.convergence_threshold < 0:
            raise ValueError("convergence_threshold must be non-negative")
        if self.privacy_budget <= 0:
            raise ValueError("privacy_budget must be positive")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'max_rounds': self.max_rounds,
            'local_epochs': self.local_epochs,
            'learning_rate': self.learning_rate,
            'convergence_threshold': self.convergence_threshold,
            'privacy_budget': self.privacy_budget,
            'batch_size': self.batch_size
        }


@dataclass
class FederatedSession:
    """A collaborative training instance."""
    model_type: ModelType
    participants: FrozenSet[str]
    configuration: FederatedConfig
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    start_time: datetime = field(default_factory=datetime.now)
    status: SessionStatus = SessionStatus.INITIALIZING
    current_round: int = 0
    rounds_completed: int = 0
    last_error: Optional[str] = None
    model_version: Optional[str] = None

    def transition_to(self, new_status: SessionStatus) -> None:
        """
        Move the session to a new status.

        Raises:
            SessionStateError: If the transition would regress the status
        """
        if new_status == self.status:
            return
        if _STATUS_RANK[new_status] <= _STATUS_RANK[self.status]:
            raise SessionStateError(
                f"Invalid status transition {self.status.value} -> {new_status.value} "
                f"for session {self.id}"
            )
        self.status = new_status

    def to_dict(self) -> Dict[str, Any]:
        """Convert session to dictionary."""
        return {
            'id': self.id,
            'model_type': self.model_type.value,
            'participants': sorted(self.participants),
            'configuration': self.configuration.to_dict(),
            'start_time': self.start_time.isoformat(),
            'status': self.status.value,
            'current_round': self.current_round,
            'rounds_completed': self.rounds_completed,
            'last_error': self.last_error,
            'model_version': self.model_version
        }


@dataclass(frozen=True)
class ModelUpdate:
    """Weight delta produced by local training or by aggregation."""
    weights: List[torch.Tensor]
    loss: float
    samples: int
    timestamp: datetime = field(default_factory=datetime.now)

    def with_weights(self, weights: List[torch.Tensor]) -> "ModelUpdate":
        """Return a new update carrying different weights."""
        return replace(self, weights=weights, timestamp=datetime.now())

    def validate(self) -> bool:
        """Validate update integrity."""
        if not self.weights or self.samples < 0:
            return False
        if not all(isinstance(w, torch.Tensor) for w in self.weights):
            return False
        return bool(np.isfinite(self.loss))

    @property
    def parameter_count(self) -> int:
        return sum(w.numel() for w in self.weights)


@dataclass(frozen=True)
class FederatedMessage:
    """Wire envelope sent to the coordinator service."""
    session_id: str
    round: int
    update: bytes
    signature: bytes
    timestamp: float
    participant_id: str = ""


@dataclass(frozen=True)
class CoordinatorResponse:
    """Coordinator reply carrying the encrypted aggregated update."""
    session_id: str
    round: int
    aggregated_update: bytes
    signature: bytes


@dataclass(frozen=True)
class TrainingProgress:
    """Progress event published after every completed round."""
    session_id: str
    round: int
    total_rounds: int
    progress_ratio: float
    loss: float
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'round': self.round,
            'total_rounds': self.total_rounds,
            'progress_ratio': self.progress_ratio,
            'loss': self.loss,
            'timestamp': self.timestamp.isoformat()
        }


@dataclass
class LocalSamples:
    """Pre-extracted numeric feature/label samples held on the device."""
    features: np.ndarray
    labels: np.ndarray

    def __post_init__(self):
        self.features = np.asarray(self.features, dtype=np.float32)
        self.labels = np.asarray(self.labels, dtype=np.float32)
        if self.features.ndim != 2:
            raise ValueError("features must be a 2-D array (samples, features)")
        if self.labels.ndim != 1:
            raise ValueError("labels must be a 1-D array")
        if len(self.features) != len(self.labels):
            raise ValueError("features and labels must have the same length")
        if len(self.features) == 0:
            raise ValueError("at least one sample is required")

    def __len__(self) -> int:
        return len(self.labels)

    @property
    def num_features(self) -> int:
        return self.features.shape[1]


@dataclass(frozen=True, order=True)
class ModelVersion:
    """Semantic version of a persisted model snapshot."""
    major: int = 1
    minor: int = 0
    patch: int = 0

    @classmethod
    def parse(cls, version: str) -> "ModelVersion":
        parts = version.strip().split('.')
        if len(parts) != 3 or not all(p.isdigit() for p in parts):
            raise ValueError(f"Invalid model version: {version!r}")
        return cls(int(parts[0]), int(parts[1]), int(parts[2]))

    def bump_patch(self) -> "ModelVersion":
        return ModelVersion(self.major, self.minor, self.patch + 1)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


INITIAL_MODEL_VERSION = ModelVersion(1, 0, 0)

# Type aliases for better code readability
ModelWeights = List[torch.Tensor]
ParticipantID = str
RoundNumber = int
