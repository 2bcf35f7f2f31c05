"""Test doubles implementing the collaborator interfaces."""

from typing import List, Optional, Sequence, Tuple

import torch
import torch.nn as nn

from fedhealth.shared.errors import KeyExchangeError, TrainingError
from fedhealth.shared.interfaces import (
    CoordinatorServiceInterface, KeyExchangeInterface, LocalTrainerInterface
)
from fedhealth.shared.models import CoordinatorResponse, FederatedMessage, LocalSamples, ModelWeights


class ScriptedTrainer(LocalTrainerInterface):
    """Trainer whose evaluation losses follow a fixed script."""

    def __init__(self, losses: Sequence[float], train_failures: int = 0, corrupt_on_failure: bool = False):
        self.losses = list(losses)
        self.train_failures = train_failures
        self.corrupt_on_failure = corrupt_on_failure
        self.train_calls = 0
        self.train_starts: List[ModelWeights] = []
        self.evaluate_calls = 0
        self.applied: List[ModelWeights] = []

    def build_model(self, num_features: int) -> nn.Module:
        torch.manual_seed(0)
        return nn.Linear(num_features, 1)

    def train(self, model, samples: LocalSamples, epochs, learning_rate, batch_size) -> Tuple[ModelWeights, float]:
        self.train_calls += 1
        self.train_starts.append(self.extract_weights(model))
        if self.train_failures > 0:
            self.train_failures -= 1
            if self.corrupt_on_failure:
                with torch.no_grad():
                    for param in model.parameters():
                        param.add_(1.0)
            raise TrainingError("scripted training failure")
        return self.extract_weights(model), 0.5

    def evaluate(self, model, samples: LocalSamples) -> float:
        index = min(self.evaluate_calls, len(self.losses) - 1)
        self.evaluate_calls += 1
        return self.losses[index]

    def extract_weights(self, model) -> ModelWeights:
        return [p.detach().clone() for p in model.parameters()]

    def apply_weights(self, weights: ModelWeights, model) -> None:
        params = list(model.parameters())
        if len(params) != len(weights) or any(p.shape != w.shape for p, w in zip(params, weights)):
            raise TrainingError("shape mismatch")
        with torch.no_grad():
            for param, weight in zip(params, weights):
                param.copy_(weight)
        self.applied.append([w.clone() for w in weights])


class FlakyCoordinator(CoordinatorServiceInterface):
    """Wraps a coordinator and injects failures into chosen calls."""

    def __init__(self, inner: CoordinatorServiceInterface, fail_calls: Sequence[int] = (),
                 forward_before_failing: bool = False, error: Optional[Exception] = None):
        self.inner = inner
        self.fail_calls = set(fail_calls)
        self.forward_before_failing = forward_before_failing
        self.error = error or ConnectionError("connection reset")
        self.messages: List[FederatedMessage] = []

    async def submit(self, message: FederatedMessage) -> CoordinatorResponse:
        call = len(self.messages)
        self.messages.append(message)
        if call in self.fail_calls:
            if self.forward_before_failing:
                await self.inner.submit(message)
            raise self.error
        return await self.inner.submit(message)


class TamperingCoordinator(CoordinatorServiceInterface):
    """Forwards submissions but corrupts the reply signature."""

    def __init__(self, inner: CoordinatorServiceInterface):
        self.inner = inner
        self.calls = 0

    async def submit(self, message: FederatedMessage) -> CoordinatorResponse:
        self.calls += 1
        response = await self.inner.submit(message)
        signature = bytes([response.signature[0] ^ 0xFF]) + response.signature[1:]
        return CoordinatorResponse(response.session_id, response.round,
                                   response.aggregated_update, signature)


class WrongRoundCoordinator(CoordinatorServiceInterface):
    """Answers every submission with a reply tagged for another round."""

    def __init__(self, inner: CoordinatorServiceInterface):
        self.inner = inner

    async def submit(self, message: FederatedMessage) -> CoordinatorResponse:
        response = await self.inner.submit(message)
        return CoordinatorResponse(response.session_id, response.round + 1,
                                   response.aggregated_update, response.signature)


class FailingKeyExchange(KeyExchangeInterface):
    """Key exchange that refuses one endpoint."""

    def __init__(self, failing_endpoint: str):
        self.failing_endpoint = failing_endpoint

    async def establish(self, session_id: str, endpoint: str) -> bytes:
        if endpoint == self.failing_endpoint:
            raise KeyExchangeError(f"{endpoint} unreachable")
        return b"k" * 32
