"""Tests for differential privacy noise injection and disclosure tracking."""

import pytest
import torch

from fedhealth.shared.errors import PrivacyError
from fedhealth.shared.models import ModelUpdate
from fedhealth.shared.privacy import (
    DifferentialPrivacyEngine, GaussianNoiseGenerator, create_privacy_engine, noise_std, privatize
)


def _zeros_update(size: int = 200_000) -> ModelUpdate:
    return ModelUpdate(weights=[torch.zeros(size)], loss=0.0, samples=1)


class TestNoiseScale:
    """Noise standard deviation."""

    def test_noise_std_is_sensitivity_over_budget(self):
        assert noise_std(2.0, 1.0) == 0.5
        assert noise_std(0.5, 2.0) == 4.0

    @pytest.mark.parametrize("budget", [0.0, -1.0, float("inf"), float("nan")])
    def test_invalid_budget_rejected(self, budget):
        with pytest.raises(PrivacyError):
            noise_std(budget)

    def test_negative_sensitivity_rejected(self):
        with pytest.raises(PrivacyError):
            noise_std(1.0, -0.1)

    def test_doubling_budget_quarters_variance(self):
        update = _zeros_update()
        generator = GaussianNoiseGenerator(seed=42).generator

        loose = privatize(update, 1.0, generator=generator)
        tight = privatize(update, 2.0, generator=generator)

        ratio = tight.weights[0].var().item() / loose.weights[0].var().item()
        assert ratio == pytest.approx(0.25, abs=0.01)

    def test_noise_is_zero_mean(self):
        noised = privatize(_zeros_update(), 1.0, generator=GaussianNoiseGenerator(seed=1).generator)

        assert abs(noised.weights[0].mean().item()) < 0.01
        assert noised.weights[0].std().item() == pytest.approx(1.0, rel=0.02)


class TestPrivatize:
    """Purity and shape preservation."""

    def test_input_update_left_untouched(self, update):
        before = [w.clone() for w in update.weights]

        noised = privatize(update, 1.0, generator=GaussianNoiseGenerator(seed=0).generator)

        for original, kept in zip(before, update.weights):
            assert torch.equal(original, kept)
        assert noised is not update
        assert noised.loss == update.loss
        assert noised.samples == update.samples

    def test_shapes_preserved(self, update):
        noised = privatize(update, 1.0)

        assert [w.shape for w in noised.weights] == [w.shape for w in update.weights]

    def test_seeded_noise_is_reproducible(self, update):
        first = privatize(update, 1.0, generator=GaussianNoiseGenerator(seed=7).generator)
        second = privatize(update, 1.0, generator=GaussianNoiseGenerator(seed=7).generator)

        for a, b in zip(first.weights, second.weights):
            assert torch.equal(a, b)

    def test_every_value_is_perturbed(self, update):
        noised = privatize(update, 1.0, generator=GaussianNoiseGenerator(seed=3).generator)

        for original, perturbed in zip(update.weights, noised.weights):
            assert torch.all(original != perturbed)

    def test_integer_tensors_are_promoted(self):
        update = ModelUpdate(weights=[torch.ones(4, dtype=torch.int64)], loss=0.0, samples=1)

        noised = privatize(update, 1.0)

        assert noised.weights[0].is_floating_point()


class TestDifferentialPrivacyEngine:
    """Engine wrapper and budget tracker."""

    def test_records_each_disclosure(self, update):
        engine = DifferentialPrivacyEngine(privacy_budget=0.5, seed=0)

        engine.privatize(update, round_number=0)
        engine.privatize(update, round_number=1)

        status = engine.budget_tracker.get_budget_status()
        assert status['disclosures'] == 2
        assert status['per_round_budget'] == 0.5
        assert status['naive_cumulative_budget'] == 1.0
        assert status['composition_accounting'] is False

    def test_overrides_apply_per_call(self, update):
        engine = create_privacy_engine(privacy_budget=1.0, seed=0)

        engine.privatize(update, privacy_budget=4.0, sensitivity=2.0, round_number=3)

        disclosure = engine.budget_tracker.disclosures[0]
        assert disclosure['round_number'] == 3
        assert disclosure['noise_std'] == 0.5

    def test_privacy_analysis(self):
        engine = create_privacy_engine(privacy_budget=0.5)

        analysis = engine.get_privacy_analysis()

        assert analysis['noise_std'] == 2.0
        assert analysis['privacy_strength'] == "strong"

    def test_invalid_budget_rejected_at_construction(self):
        with pytest.raises(PrivacyError):
            DifferentialPrivacyEngine(privacy_budget=0.0)
