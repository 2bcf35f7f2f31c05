"""
Federated Averaging (FedAvg) for the reference coordinator.
Combines participant updates by sample-weighted averaging.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

import numpy as np
import torch

from ..shared.errors import FederatedLearningError
from ..shared.interfaces import AggregationServiceInterface
from ..shared.models import ModelUpdate, ModelWeights

logger = logging.getLogger(__name__)


class FedAvgError(FederatedLearningError):
    """Raised when updates cannot be aggregated."""
    pass


class FedAvgAggregator(AggregationServiceInterface):
    """
    Implements the FedAvg algorithm.

    Each update is weighted by the number of samples it was trained on,
    unless explicit weights are supplied.
    """

    def __init__(self, min_updates: int = 1):
        """
        Initialize FedAvg aggregator.

        Args:
            min_updates: Minimum number of valid updates required
        """
        self.min_updates = min_updates
        self.aggregation_history: List[Dict[str, Any]] = []

        logger.info(f"FedAvg aggregator initialized - min_updates: {min_updates}")

    def aggregate_updates(self,
                          updates: List[ModelUpdate],
                          weights: Optional[List[float]] = None) -> ModelUpdate:
        """
        Aggregate updates into a single update.

        Args:
            updates: Participant updates for one round
            weights: Optional custom weights (sample counts if None)

        Returns:
            ModelUpdate: Averaged weights, weighted loss and total samples
        """
        try:
            start_time = datetime.now()

            self._validate_aggregation_inputs(updates, weights)

            if weights is None:
                aggregation_weights = self._calculate_sample_weights(updates)
            else:
                aggregation_weights = self._normalize_weights(weights)

            aggregated_weights = self._weighted_average(updates, aggregation_weights)
            total_samples = sum(update.samples for update in updates)
            avg_loss = float(sum(update.loss * weight
                                 for update, weight in zip(updates, aggregation_weights)))

            aggregation_time = (datetime.now() - start_time).total_seconds()
            self._record_aggregation_stats(len(updates), total_samples, avg_loss, aggregation_time)

            logger.info(f"FedAvg aggregation completed - {len(updates)} updates, "
                        f"{total_samples} total samples, {aggregation_time:.3f}s")

            return ModelUpdate(weights=aggregated_weights, loss=avg_loss, samples=total_samples)

        except FedAvgError:
            raise
        except Exception as e:
            logger.error(f"FedAvg aggregation failed: {str(e)}")
            raise FedAvgError(f"FedAvg aggregation failed: {str(e)}")

    def _validate_aggregation_inputs(self,
                                     updates: List[ModelUpdate],
                                     weights: Optional[List[float]]):
        """Validate aggregation inputs."""
        if len(updates) < max(1, self.min_updates):
            raise FedAvgError(f"Insufficient updates: {len(updates)} < {max(1, self.min_updates)}")

        for index, update in enumerate(updates):
            if not update.validate():
                raise FedAvgError(f"Update {index} failed validation")

        reference = [w.shape for w in updates[0].weights]
        for index, update in enumerate(updates[1:], 1):
            if [w.shape for w in update.weights] != reference:
                raise FedAvgError(f"Update {index} has incompatible weight shapes")

        if weights is not None:
            if len(weights) != len(updates):
                raise FedAvgError("Number of weights must match number of updates")
            if any(w < 0 for w in weights):
                raise FedAvgError("All weights must be non-negative")
            if sum(weights) == 0:
                raise FedAvgError("Sum of weights cannot be zero")

    def _calculate_sample_weights(self, updates: List[ModelUpdate]) -> List[float]:
        """Calculate weights based on number of samples."""
        total_samples = sum(update.samples for update in updates)

        if total_samples == 0:
            return [1.0 / len(updates)] * len(updates)

        return [update.samples / total_samples for update in updates]

    def _normalize_weights(self, weights: List[float]) -> List[float]:
        """Normalize weights to sum to 1.0."""
        total_weight = sum(weights)
        return [w / total_weight for w in weights]

    def _weighted_average(self,
                          updates: List[ModelUpdate],
                          weights: List[float]) -> ModelWeights:
        """Perform weighted averaging of weight lists."""
        aggregated = [torch.zeros_like(t, dtype=torch.float32) for t in updates[0].weights]

        for update, weight in zip(updates, weights):
            for index, tensor in enumerate(update.weights):
                aggregated[index] += weight * tensor.float()

        return aggregated

    def _record_aggregation_stats(self,
                                  num_updates: int,
                                  total_samples: int,
                                  avg_loss: float,
                                  aggregation_time: float):
        """Record aggregation statistics."""
        self.aggregation_history.append({
            'timestamp': datetime.now().isoformat(),
            'num_updates': num_updates,
            'total_samples': total_samples,
            'avg_loss': avg_loss,
            'aggregation_time': aggregation_time
        })

        if len(self.aggregation_history) > 100:
            self.aggregation_history = self.aggregation_history[-100:]

    def get_aggregation_stats(self) -> Dict[str, Any]:
        """Get aggregation statistics."""
        if not self.aggregation_history:
            return {'message': 'No aggregation history available'}

        recent_stats = self.aggregation_history[-10:]

        return {
            'total_aggregations': len(self.aggregation_history),
            'avg_updates_per_round': float(np.mean([s['num_updates'] for s in recent_stats])),
            'avg_samples_per_round': float(np.mean([s['total_samples'] for s in recent_stats])),
            'avg_aggregation_time': float(np.mean([s['aggregation_time'] for s in recent_stats])),
            'avg_loss': float(np.mean([s['avg_loss'] for s in recent_stats]))
        }
