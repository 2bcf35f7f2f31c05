"""
PyTorch model architectures for federated health learning.
Implements small tabular networks for on-device health feature vectors.
"""

from typing import Any, Dict, List, Sequence
import logging

import torch
import torch.nn as nn
import torch.nn.functional as F

from .models import ModelType, ModelWeights

logger = logging.getLogger(__name__)


class HealthModelBase(nn.Module):
    """Base class for federated health models."""

    def __init__(self, input_dim: int):
        super().__init__()
        if input_dim <= 0:
            raise ValueError("input_dim must be positive")
        self.model_name = "base_health_model"
        self.input_dim = input_dim

    def get_model_weights(self) -> ModelWeights:
        """Get model parameters as an ordered list of tensors."""
        return [param.detach().clone() for param in self.parameters()]

    def get_parameter_count(self) -> int:
        """Get total number of model parameters."""
        return sum(p.numel() for p in self.parameters())

    def estimate_memory_usage(self) -> int:
        """Estimate memory usage in bytes."""
        param_size = sum(p.numel() * p.element_size() for p in self.parameters())
        buffer_size = sum(b.numel() * b.element_size() for b in self.buffers())
        return param_size + buffer_size

    def get_model_info(self) -> Dict[str, Any]:
        """Get comprehensive model information."""
        return {
            'name': self.model_name,
            'input_dim': self.input_dim,
            'parameters': self.get_parameter_count(),
            'memory_bytes': self.estimate_memory_usage(),
            'trainable_params': sum(p.numel() for p in self.parameters() if p.requires_grad)
        }


class TabularMLP(HealthModelBase):
    """Feed-forward network producing a single output per sample."""

    def __init__(self,
                 input_dim: int,
                 hidden_dims: Sequence[int] = (32, 16),
                 dropout_rate: float = 0.1):
        super().__init__(input_dim)
        self.model_name = "tabular_mlp"
        self.hidden_dims = list(hidden_dims)
        self.dropout = nn.Dropout(dropout_rate)

        layers: List[nn.Module] = []
        previous = input_dim
        for width in self.hidden_dims:
            layers.append(nn.Linear(previous, width))
            previous = width
        self.hidden = nn.ModuleList(layers)
        self.head = nn.Linear(previous, 1)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        for layer in self.hidden:
            x = self.dropout(F.relu(layer(x)))
        # (batch, 1) -> (batch,)
        return self.head(x).squeeze(-1)


class CardiovascularRiskNet(TabularMLP):
    """Binary risk classifier over vitals and activity features."""

    def __init__(self, input_dim: int, dropout_rate: float = 0.2):
        super().__init__(input_dim, hidden_dims=(64, 32), dropout_rate=dropout_rate)
        self.model_name = "cardiovascular_risk_net"


class GlucosePredictionNet(TabularMLP):
    """Regressor for next-window glucose level."""

    def __init__(self, input_dim: int, dropout_rate: float = 0.1):
        super().__init__(input_dim, hidden_dims=(64, 32, 16), dropout_rate=dropout_rate)
        self.model_name = "glucose_prediction_net"


class SleepQualityNet(TabularMLP):
    """Regressor for a nightly sleep quality score."""

    def __init__(self, input_dim: int, dropout_rate: float = 0.1):
        super().__init__(input_dim, hidden_dims=(32, 16), dropout_rate=dropout_rate)
        self.model_name = "sleep_quality_net"


class StressDetectionNet(TabularMLP):
    """Binary stress classifier over heart-rate variability features."""

    def __init__(self, input_dim: int, dropout_rate: float = 0.2):
        super().__init__(input_dim, hidden_dims=(32, 32), dropout_rate=dropout_rate)
        self.model_name = "stress_detection_net"


class ModelFactory:
    """Factory class for creating health models."""

    AVAILABLE_MODELS = {
        ModelType.CARDIOVASCULAR_RISK: CardiovascularRiskNet,
        ModelType.GLUCOSE_PREDICTION: GlucosePredictionNet,
        ModelType.SLEEP_QUALITY: SleepQualityNet,
        ModelType.STRESS_DETECTION: StressDetectionNet,
    }

    @classmethod
    def create_model(cls, model_type: ModelType, input_dim: int, **kwargs) -> HealthModelBase:
        """
        Create a model instance for a model type.

        Args:
            model_type: Model family to create
            input_dim: Number of input features
            **kwargs: Model-specific parameters

        Returns:
            HealthModelBase: Model instance
        """
        if model_type not in cls.AVAILABLE_MODELS:
            raise ValueError(f"Unknown model type: {model_type}. "
                             f"Available: {[m.value for m in cls.AVAILABLE_MODELS]}")

        model = cls.AVAILABLE_MODELS[model_type](input_dim, **kwargs)
        logger.debug(f"Created {model.model_name} with {model.get_parameter_count()} parameters")
        return model

    @classmethod
    def list_available_models(cls) -> List[str]:
        """Get list of available model type names."""
        return [m.value for m in cls.AVAILABLE_MODELS]


def weights_compatible(model: nn.Module, weights: ModelWeights) -> bool:
    """Check that a weight list matches a model's parameter count and shapes."""
    params = list(model.parameters())
    if len(params) != len(weights):
        return False
    return all(p.shape == w.shape for p, w in zip(params, weights))
