"""Tests for the FedAvg aggregator."""

import pytest
import torch

from fedhealth.aggregation.fedavg import FedAvgAggregator, FedAvgError
from fedhealth.shared.models import ModelUpdate


def _update(value: float, samples: int, loss: float = 0.5) -> ModelUpdate:
    return ModelUpdate(weights=[torch.full((2, 2), value), torch.full((2,), value)],
                       loss=loss, samples=samples)


class TestFedAvgAggregator:

    def test_sample_weighted_average(self):
        aggregator = FedAvgAggregator()

        result = aggregator.aggregate_updates([_update(0.0, 10, loss=1.0), _update(4.0, 30, loss=0.2)])

        assert torch.allclose(result.weights[0], torch.full((2, 2), 3.0))
        assert torch.allclose(result.weights[1], torch.full((2,), 3.0))
        assert result.samples == 40
        assert result.loss == pytest.approx(0.4)

    def test_custom_weights(self):
        result = FedAvgAggregator().aggregate_updates([_update(0.0, 10), _update(2.0, 10)], weights=[3, 1])

        assert torch.allclose(result.weights[0], torch.full((2, 2), 0.5))

    def test_zero_samples_averaged_equally(self):
        result = FedAvgAggregator().aggregate_updates([_update(1.0, 0), _update(3.0, 0)])

        assert torch.allclose(result.weights[0], torch.full((2, 2), 2.0))

    def test_single_update_passes_through(self):
        result = FedAvgAggregator().aggregate_updates([_update(1.5, 8)])

        assert torch.allclose(result.weights[0], torch.full((2, 2), 1.5))

    def test_shape_mismatch_rejected(self):
        odd = ModelUpdate(weights=[torch.zeros(3, 3), torch.zeros(2)], loss=0.1, samples=5)

        with pytest.raises(FedAvgError):
            FedAvgAggregator().aggregate_updates([_update(1.0, 5), odd])

    def test_too_few_updates_rejected(self):
        with pytest.raises(FedAvgError):
            FedAvgAggregator(min_updates=2).aggregate_updates([_update(1.0, 5)])

    def test_non_finite_loss_rejected(self):
        with pytest.raises(FedAvgError):
            FedAvgAggregator().aggregate_updates([_update(1.0, 5, loss=float("nan"))])

    @pytest.mark.parametrize("weights", [[1.0], [-1.0, 2.0], [0.0, 0.0]])
    def test_invalid_custom_weights_rejected(self, weights):
        with pytest.raises(FedAvgError):
            FedAvgAggregator().aggregate_updates([_update(1.0, 5), _update(2.0, 5)], weights=weights)

    def test_stats(self):
        aggregator = FedAvgAggregator()
        assert 'message' in aggregator.get_aggregation_stats()

        aggregator.aggregate_updates([_update(1.0, 5), _update(2.0, 5)])

        stats = aggregator.get_aggregation_stats()
        assert stats['total_aggregations'] == 1
        assert stats['avg_updates_per_round'] == 2.0
