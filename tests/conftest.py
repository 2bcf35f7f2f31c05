"""Shared pytest fixtures for federated health learning tests."""

import numpy as np
import pytest
import torch

from fedhealth.client.secure_transport import SecureTransport
from fedhealth.client.session_controller import SessionController
from fedhealth.coordinator.service import CoordinatorService
from fedhealth.shared.config import OrchestratorSettings
from fedhealth.shared.crypto import KeyManager, StoredKeyExchange
from fedhealth.shared.data_loader import InMemorySampleProvider
from fedhealth.shared.models import (
    FederatedConfig, FederatedSession, LocalSamples, ModelType, ModelUpdate
)
from fedhealth.shared.storage import InMemoryKeyStorage

from tests.fakes import ScriptedTrainer


@pytest.fixture
def samples():
    """Small deterministic local sample set."""
    rng = np.random.default_rng(0)
    features = rng.normal(size=(16, 3)).astype(np.float32)
    labels = (features[:, 0] > 0).astype(np.float32)
    return LocalSamples(features=features, labels=labels)


@pytest.fixture
def sample_provider(samples):
    return InMemorySampleProvider({model_type: samples for model_type in ModelType})


@pytest.fixture
def settings():
    """Round loop settings without waits."""
    return OrchestratorSettings(pacing_delay=0.0, retry_backoff=0.0, round_timeout=5.0, noise_seed=0)


@pytest.fixture
def key_storage():
    """Key storage shared by client and coordinator."""
    return InMemoryKeyStorage()


@pytest.fixture
def client_keys(key_storage):
    return KeyManager(StoredKeyExchange(key_storage))


@pytest.fixture
def coordinator_keys(key_storage):
    return KeyManager(StoredKeyExchange(key_storage))


@pytest.fixture
def coordinator(coordinator_keys):
    return CoordinatorService(coordinator_keys, quorum_timeout=5.0)


@pytest.fixture
def transport(coordinator, client_keys):
    return SecureTransport(coordinator, client_keys, participant_id="p1", timeout=5.0)


@pytest.fixture
def session():
    return FederatedSession(
        model_type=ModelType.CARDIOVASCULAR_RISK,
        participants=frozenset({"p1", "p2", "p3"}),
        configuration=FederatedConfig(max_rounds=5, convergence_threshold=0.01),
        id="s1"
    )


@pytest.fixture
def update():
    return ModelUpdate(weights=[torch.ones(3, 2), torch.zeros(2)], loss=0.4, samples=16)


@pytest.fixture
def controller_factory(sample_provider, client_keys, settings, transport):
    """Build a session controller around a scripted trainer and a transport."""
    default_transport = transport

    def _factory(trainer=None, transport=None, model_store=None, key_manager=None):
        trainer = trainer or ScriptedTrainer([1.0])
        transport = transport if transport is not None else default_transport
        return SessionController(
            trainer_factory=lambda model_type: trainer,
            sample_provider=sample_provider,
            key_manager=key_manager or client_keys,
            transport=transport,
            model_store=model_store,
            settings=settings
        )

    return _factory
