"""
Convergence detection for federated health learning.
Decides when the round loop should stop based on loss improvement.
"""

import math
from collections import deque
from typing import Any, Dict, List, Optional
import logging

import numpy as np

logger = logging.getLogger(__name__)


def should_stop(previous_loss: float, current_loss: float, threshold: float) -> bool:
    """
    Decide whether training has converged.

    True when the absolute loss change is strictly below the threshold.
    Non-finite losses (including the initial infinite previous loss) never
    count as converged.

    Args:
        previous_loss: Loss observed after the previous round
        current_loss: Loss observed after the current round
        threshold: Convergence threshold

    Returns:
        bool: True if the loop should stop
    """
    if not (math.isfinite(previous_loss) and math.isfinite(current_loss)):
        return False
    return abs(previous_loss - current_loss) < threshold


class ConvergenceMonitor:
    """Tracks per-round loss and applies the convergence rule."""

    should_stop = staticmethod(should_stop)

    def __init__(self, threshold: float, history_size: int = 100):
        """
        Initialize convergence monitor.

        Args:
            threshold: Convergence threshold on the absolute loss change
            history_size: Number of rounds of loss history to keep
        """
        if threshold < 0:
            raise ValueError("threshold must be non-negative")
        self.threshold = threshold
        self.loss_history = deque(maxlen=history_size)
        self.previous_loss = float('inf')
        self.best_loss = float('inf')
        self.converged = False
        self.converged_round: Optional[int] = None

    def observe(self, round_number: int, loss: float) -> bool:
        """
        Record a round's loss and check convergence against the previous one.

        Returns:
            bool: True if the loop should stop after this round
        """
        stop = should_stop(self.previous_loss, loss, self.threshold)

        self.loss_history.append(loss)
        if math.isfinite(loss) and loss < self.best_loss:
            self.best_loss = loss
        self.previous_loss = loss

        if stop:
            self.converged = True
            self.converged_round = round_number
            logger.info(f"Converged at round {round_number} (loss={loss:.6f}, threshold={self.threshold})")

        return stop

    def _calculate_trend(self, values: List[float]) -> str:
        """Calculate trend direction from a list of values."""
        finite = [v for v in values if math.isfinite(v)]
        if len(finite) < 2:
            return "insufficient_data"

        slope = np.polyfit(np.arange(len(finite)), finite, 1)[0]

        if slope < -0.001:
            return "improving"
        elif slope > 0.001:
            return "degrading"
        else:
            return "stable"

    def get_convergence_summary(self) -> Dict[str, Any]:
        """Get convergence summary."""
        history = list(self.loss_history)
        return {
            'converged': self.converged,
            'converged_round': self.converged_round,
            'threshold': self.threshold,
            'rounds_observed': len(history),
            'best_loss': self.best_loss if math.isfinite(self.best_loss) else None,
            'last_loss': history[-1] if history else None,
            'loss_trend': self._calculate_trend(history[-10:])
        }

    def reset(self):
        """Reset monitor state."""
        self.loss_history.clear()
        self.previous_loss = float('inf')
        self.best_loss = float('inf')
        self.converged = False
        self.converged_round = None
