"""
Tests for the shared data models.

Tests cover:
- Session hyperparameter validation
- Monotonic session status transitions
- Model update validation
- Model versions and local samples
"""

import numpy as np
import pytest
import torch

from fedhealth.shared.errors import SessionStateError
from fedhealth.shared.models import (
    INITIAL_MODEL_VERSION, FederatedConfig, LocalSamples, ModelType, ModelUpdate, ModelVersion,
    SessionStatus, TrainingProgress
)


class TestFederatedConfig:
    """Session hyperparameters."""

    def test_defaults(self):
        config = FederatedConfig()

        assert config.max_rounds == 100
        assert config.local_epochs == 5
        assert config.learning_rate == 0.001
        assert config.convergence_threshold == 0.01
        assert config.privacy_budget == 1.0
        assert config.batch_size == 32

    @pytest.mark.parametrize("field,value", [
        ("max_rounds", 0),
        ("local_epochs", -1),
        ("learning_rate", 0.0),
        ("convergence_threshold", -0.5),
        ("privacy_budget", 0.0),
        ("batch_size", 0),
    ])
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(ValueError):
            FederatedConfig(**{field: value})

    def test_zero_threshold_allowed(self):
        assert FederatedConfig(convergence_threshold=0.0).convergence_threshold == 0.0

    def test_immutable(self):
        config = FederatedConfig()

        with pytest.raises(AttributeError):
            config.max_rounds = 3


class TestFederatedSession:
    """Status transitions."""

    def test_forward_transitions(self, session):
        session.transition_to(SessionStatus.TRAINING)
        session.transition_to(SessionStatus.COMPLETED)

        assert session.status.is_terminal

    def test_cancel_before_training(self, session):
        session.transition_to(SessionStatus.CANCELLED)

        assert session.status == SessionStatus.CANCELLED

    @pytest.mark.parametrize("terminal", [
        SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED
    ])
    def test_terminal_status_is_final(self, session, terminal):
        session.transition_to(SessionStatus.TRAINING)
        session.transition_to(terminal)

        for target in SessionStatus:
            if target != terminal:
                with pytest.raises(SessionStateError):
                    session.transition_to(target)

    def test_training_cannot_regress(self, session):
        session.transition_to(SessionStatus.TRAINING)

        with pytest.raises(SessionStateError):
            session.transition_to(SessionStatus.INITIALIZING)

    def test_same_status_is_noop(self, session):
        session.transition_to(SessionStatus.INITIALIZING)

        assert session.status == SessionStatus.INITIALIZING

    def test_to_dict(self, session):
        data = session.to_dict()

        assert data['id'] == "s1"
        assert data['participants'] == ["p1", "p2", "p3"]
        assert data['status'] == "initializing"
        assert data['configuration']['max_rounds'] == 5


class TestModelUpdate:
    """Update integrity."""

    def test_valid(self, update):
        assert update.validate()
        assert update.parameter_count == 8

    def test_empty_weights_invalid(self):
        assert not ModelUpdate(weights=[], loss=0.1, samples=1).validate()

    def test_non_finite_loss_invalid(self):
        assert not ModelUpdate(weights=[torch.zeros(1)], loss=float("inf"), samples=1).validate()

    def test_with_weights_returns_new_update(self, update):
        replaced = update.with_weights([torch.zeros(1)])

        assert replaced is not update
        assert len(update.weights) == 2
        assert replaced.samples == update.samples


class TestModelVersion:
    """Semantic versions of stored snapshots."""

    def test_initial_version(self):
        assert str(INITIAL_MODEL_VERSION) == "1.0.0"

    def test_bump_patch(self):
        assert str(ModelVersion.parse("1.0.9").bump_patch()) == "1.0.10"

    def test_ordering_is_numeric(self):
        assert ModelVersion.parse("1.0.10") > ModelVersion.parse("1.0.9")
        assert ModelVersion.parse("2.0.0") > ModelVersion.parse("1.9.9")

    @pytest.mark.parametrize("text", ["1.0", "v1.0.0", "1.0.x", ""])
    def test_invalid_versions_rejected(self, text):
        with pytest.raises(ValueError):
            ModelVersion.parse(text)


class TestLocalSamples:
    """Local feature/label arrays."""

    def test_arrays_cast_to_float32(self):
        samples = LocalSamples(features=[[1, 2], [3, 4]], labels=[0, 1])

        assert samples.features.dtype == np.float32
        assert len(samples) == 2
        assert samples.num_features == 2

    def test_length_mismatch_rejected(self):
        with pytest.raises(ValueError):
            LocalSamples(features=np.zeros((3, 2)), labels=np.zeros(2))

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            LocalSamples(features=np.zeros((0, 2)), labels=np.zeros(0))

    def test_feature_rank_checked(self):
        with pytest.raises(ValueError):
            LocalSamples(features=np.zeros(3), labels=np.zeros(3))


class TestModelType:

    def test_tasks(self):
        assert ModelType.CARDIOVASCULAR_RISK.task == "classification"
        assert ModelType.STRESS_DETECTION.task == "classification"
        assert ModelType.GLUCOSE_PREDICTION.task == "regression"
        assert ModelType.SLEEP_QUALITY.task == "regression"

    def test_progress_to_dict(self):
        event = TrainingProgress("s1", 1, 4, 0.5, 0.3)

        assert event.to_dict()['progress_ratio'] == 0.5
