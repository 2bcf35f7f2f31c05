"""Tests for the convergence rule and monitor."""

import pytest

from fedhealth.aggregation.convergence import ConvergenceMonitor, should_stop


class TestShouldStop:
    """The pure convergence rule."""

    def test_identical_losses_stop(self):
        assert should_stop(0.42, 0.42, 0.01)

    def test_small_change_stops(self):
        assert should_stop(0.19, 0.189, 0.01)

    def test_large_change_continues(self):
        assert not should_stop(1.0, 0.5, 0.01)

    def test_change_equal_to_threshold_continues(self):
        assert not should_stop(1.0, 0.5, 0.5)

    def test_loss_increase_within_threshold_stops(self):
        assert should_stop(0.300, 0.305, 0.01)

    def test_infinite_previous_loss_never_stops(self):
        assert not should_stop(float("inf"), 0.1, 0.01)
        assert not should_stop(float("inf"), float("inf"), 0.01)

    def test_nan_loss_never_stops(self):
        assert not should_stop(0.1, float("nan"), 0.01)

    def test_zero_threshold_never_stops(self):
        assert not should_stop(0.5, 0.5, 0.0)

    def test_available_on_monitor(self):
        assert ConvergenceMonitor.should_stop(0.5, 0.5, 0.1)


class TestConvergenceMonitor:
    """Loss history tracking."""

    def test_scenario_converges_at_round_four(self):
        monitor = ConvergenceMonitor(threshold=0.01)
        decisions = [monitor.observe(r, loss) for r, loss in enumerate([1.0, 0.5, 0.2, 0.19, 0.189])]

        assert decisions == [False, False, False, False, True]
        assert monitor.converged_round == 4

    def test_tracks_best_loss(self):
        monitor = ConvergenceMonitor(threshold=0.01)
        for r, loss in enumerate([0.8, 0.3, 0.6]):
            monitor.observe(r, loss)

        summary = monitor.get_convergence_summary()
        assert summary['best_loss'] == 0.3
        assert summary['last_loss'] == 0.6
        assert summary['rounds_observed'] == 3

    def test_trend(self):
        monitor = ConvergenceMonitor(threshold=0.0)
        for r, loss in enumerate([1.0, 0.8, 0.6, 0.4]):
            monitor.observe(r, loss)

        assert monitor.get_convergence_summary()['loss_trend'] == "improving"

    def test_reset(self):
        monitor = ConvergenceMonitor(threshold=0.01)
        monitor.observe(0, 0.5)
        monitor.observe(1, 0.5)

        monitor.reset()

        assert not monitor.converged
        assert monitor.previous_loss == float("inf")
        assert monitor.get_convergence_summary()['best_loss'] is None

    def test_negative_threshold_rejected(self):
        with pytest.raises(ValueError):
            ConvergenceMonitor(threshold=-0.1)
