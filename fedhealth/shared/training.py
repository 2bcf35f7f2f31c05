"""
Local training utilities for federated health learning clients.
Implements the default PyTorch local trainer behind LocalTrainerInterface.
"""

import time
from typing import List, Optional, Tuple
import logging

import torch
import torch.nn as nn
import torch.optim as optim
from torch.utils.data import DataLoader, TensorDataset

from .errors import TrainingError
from .interfaces import LocalTrainerInterface
from .models import LocalSamples, ModelType, ModelWeights
from .models_pytorch import ModelFactory, weights_compatible

logger = logging.getLogger(__name__)


class TorchLocalTrainer(LocalTrainerInterface):
    """Trains a model type's network on local samples."""

    def __init__(self,
                 model_type: ModelType,
                 device: Optional[torch.device] = None,
                 optimizer_type: str = 'adam',
                 seed: Optional[int] = None):
        """
        Initialize local trainer.

        Args:
            model_type: Model family being trained
            device: Device to use for training (CPU/GPU)
            optimizer_type: Type of optimizer ('adam', 'sgd', 'adamw')
            seed: Seed for model init and batch shuffling (random if None)
        """
        self.model_type = model_type
        self.device = device or torch.device('cuda' if torch.cuda.is_available() else 'cpu')
        self.optimizer_type = optimizer_type
        self.generator = torch.Generator()
        if seed is not None:
            self.generator.manual_seed(seed)
        self.seed = seed

        self.training_history: List[dict] = []

        logger.info(f"TorchLocalTrainer for {model_type.value} initialized on device: {self.device}")

    def build_model(self, num_features: int) -> nn.Module:
        if self.seed is not None:
            torch.manual_seed(self.seed)
        model = ModelFactory.create_model(self.model_type, num_features)
        return model.to(self.device)

    def _criterion(self) -> nn.Module:
        if self.model_type.task == "classification":
            return nn.BCEWithLogitsLoss()
        return nn.MSELoss()

    def _create_optimizer(self, model: nn.Module, learning_rate: float) -> optim.Optimizer:
        """Create optimizer based on type."""
        optimizer_type = self.optimizer_type.lower()

        if optimizer_type == 'adam':
            return optim.Adam(model.parameters(), lr=learning_rate)
        elif optimizer_type == 'sgd':
            return optim.SGD(model.parameters(), lr=learning_rate, momentum=0.9)
        elif optimizer_type == 'adamw':
            return optim.AdamW(model.parameters(), lr=learning_rate)
        else:
            raise ValueError(f"Unknown optimizer type: {optimizer_type}")

    def _tensors(self, samples: LocalSamples) -> Tuple[torch.Tensor, torch.Tensor]:
        features = torch.from_numpy(samples.features).to(self.device)
        labels = torch.from_numpy(samples.labels).to(self.device)
        return features, labels

    def train(self,
              model: nn.Module,
              samples: LocalSamples,
              epochs: int,
              learning_rate: float,
              batch_size: int) -> Tuple[ModelWeights, float]:
        """
        Train the local model for the given number of epochs.

        Args:
            model: Model to train in place
            samples: Local feature/label samples
            epochs: Number of training epochs
            learning_rate: Learning rate for optimizer
            batch_size: Mini-batch size

        Returns:
            Tuple of (updated weights, average loss of the last epoch)
        """
        try:
            start_time = time.time()

            features, labels = self._tensors(samples)
            loader = DataLoader(
                TensorDataset(features, labels),
                batch_size=batch_size,
                shuffle=True,
                generator=self.generator
            )
            optimizer = self._create_optimizer(model, learning_rate)
            criterion = self._criterion()

            epoch_loss = float('nan')
            for epoch in range(epochs):
                epoch_loss = self._train_epoch(model, loader, optimizer, criterion)
                logger.debug(f"Epoch {epoch+1}/{epochs} - Loss: {epoch_loss:.4f}")

            training_time = time.time() - start_time
            self.training_history.append({
                'epochs': epochs,
                'final_loss': epoch_loss,
                'training_time': training_time,
                'samples_processed': len(samples) * epochs
            })

            logger.info(f"Local training completed - Final Loss: {epoch_loss:.4f}, "
                        f"Time: {training_time:.2f}s")

            return self.extract_weights(model), float(epoch_loss)

        except Exception as e:
            logger.error(f"Local training failed: {str(e)}")
            raise TrainingError(f"Local training failed: {str(e)}")

    def _train_epoch(self,
                     model: nn.Module,
                     loader: DataLoader,
                     optimizer: optim.Optimizer,
                     criterion: nn.Module) -> float:
        """Train for one epoch and return the sample-weighted mean loss."""
        model.train()

        running_loss = 0.0
        total_samples = 0

        for data, targets in loader:
            optimizer.zero_grad()
            outputs = model(data)
            loss = criterion(outputs, targets)
            loss.backward()
            optimizer.step()

            running_loss += loss.item() * targets.size(0)
            total_samples += targets.size(0)

        return running_loss / total_samples

    def evaluate(self, model: nn.Module, samples: LocalSamples) -> float:
        """Compute the model loss on local samples."""
        try:
            model.eval()
            features, labels = self._tensors(samples)
            with torch.no_grad():
                loss = self._criterion()(model(features), labels)
            return float(loss.item())

        except Exception as e:
            logger.error(f"Evaluation failed: {str(e)}")
            raise TrainingError(f"Evaluation failed: {str(e)}")

    def extract_weights(self, model: nn.Module) -> ModelWeights:
        return [param.detach().cpu().clone() for param in model.parameters()]

    def apply_weights(self, weights: ModelWeights, model: nn.Module) -> None:
        """
        Replace all model parameters.

        Every tensor is checked before any parameter is touched, so a
        mismatched weight list leaves the model unchanged.

        Raises:
            TrainingError: If count or shapes do not match the model
        """
        if not weights_compatible(model, weights):
            expected = [tuple(p.shape) for p in model.parameters()]
            received = [tuple(w.shape) for w in weights]
            raise TrainingError(f"Weight shapes {received} do not match model parameters {expected}")

        with torch.no_grad():
            for param, weight in zip(model.parameters(), weights):
                param.copy_(weight.to(device=param.device, dtype=param.dtype))


def create_local_trainer(model_type: ModelType, seed: Optional[int] = None) -> TorchLocalTrainer:
    """Factory used by the session controller to allocate a trainer per session."""
    return TorchLocalTrainer(model_type, seed=seed)
