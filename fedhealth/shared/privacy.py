"""
Differential privacy mechanisms for federated health learning.
Implements Gaussian noise injection on model updates and disclosure tracking.

Known limitation: the full session privacy budget is applied identically on
every round. No composition accounting is performed; the budget tracker
only records disclosures so the cumulative exposure stays visible.
"""

import math
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

import torch

from .errors import PrivacyError
from .models import ModelUpdate

logger = logging.getLogger(__name__)


def noise_std(privacy_budget: float, sensitivity: float = 1.0) -> float:
    """
    Standard deviation of the Gaussian noise for a budget and sensitivity.

    Args:
        privacy_budget: Differential privacy budget (must be positive)
        sensitivity: Sensitivity of the update (must be non-negative)

    Returns:
        float: sensitivity / privacy_budget
    """
    if not math.isfinite(privacy_budget) or privacy_budget <= 0:
        raise PrivacyError(f"Privacy budget must be positive, got {privacy_budget}")
    if not math.isfinite(sensitivity) or sensitivity < 0:
        raise PrivacyError(f"Sensitivity must be non-negative, got {sensitivity}")
    return sensitivity / privacy_budget


def privatize(update: ModelUpdate,
              privacy_budget: float,
              sensitivity: float = 1.0,
              generator: Optional[torch.Generator] = None) -> ModelUpdate:
    """
    Add zero-mean Gaussian noise to every value of every weight tensor.

    Pure function of its inputs: given the same generator state it always
    produces the same result, and the input update is left untouched.

    Args:
        update: Local model update to privatize
        privacy_budget: Session privacy budget
        sensitivity: Sensitivity bound of the update
        generator: Optional seeded noise source

    Returns:
        ModelUpdate: New update with noised weights
    """
    sigma = noise_std(privacy_budget, sensitivity)

    noisy_weights = []
    for tensor in update.weights:
        base = tensor.detach()
        if not base.is_floating_point():
            base = base.float()
        noise = torch.normal(
            mean=0.0,
            std=sigma,
            size=tuple(base.shape),
            generator=generator,
            dtype=base.dtype,
        )
        noisy_weights.append(base + noise.to(base.device))

    return update.with_weights(noisy_weights)


class GaussianNoiseGenerator:
    """Seedable source of Gaussian noise for differential privacy."""

    def __init__(self, seed: Optional[int] = None):
        """
        Initialize noise generator.

        Args:
            seed: Seed for reproducible noise (random if None)
        """
        self.seed = seed
        self.generator = torch.Generator()
        if seed is not None:
            self.generator.manual_seed(seed)
        else:
            self.generator.seed()


class PrivacyBudgetTracker:
    """Records privacy disclosures made by a session."""

    def __init__(self, privacy_budget: float):
        """
        Initialize privacy budget tracker.

        Args:
            privacy_budget: Budget configured for the session
        """
        self.privacy_budget = privacy_budget
        self.disclosures: List[Dict[str, Any]] = []
        self.start_time = datetime.now()

    def record_disclosure(self, round_number: int, privacy_budget: float, sigma: float):
        """Record one privatized update leaving the device."""
        self.disclosures.append({
            'timestamp': datetime.now().isoformat(),
            'round_number': round_number,
            'privacy_budget': privacy_budget,
            'noise_std': sigma
        })
        logger.debug(f"Privacy disclosure recorded for round {round_number} "
                     f"(budget={privacy_budget}, σ={sigma:.6f})")

    @property
    def naive_cumulative_budget(self) -> float:
        """Sum of budgets spent so far, without composition bounds."""
        return sum(d['privacy_budget'] for d in self.disclosures)

    def get_budget_status(self) -> Dict[str, Any]:
        """Get budget usage summary."""
        return {
            'configured_budget': self.privacy_budget,
            'disclosures': len(self.disclosures),
            'per_round_budget': self.privacy_budget,
            'naive_cumulative_budget': self.naive_cumulative_budget,
            'composition_accounting': False,
            'tracking_duration': (datetime.now() - self.start_time).total_seconds()
        }


class DifferentialPrivacyEngine:
    """Privatizes local updates before they leave the device."""

    def __init__(self,
                 privacy_budget: float,
                 sensitivity: float = 1.0,
                 seed: Optional[int] = None):
        """
        Initialize differential privacy engine.

        Args:
            privacy_budget: Session privacy budget
            sensitivity: Default sensitivity bound
            seed: Seed for the noise source (random if None)
        """
        noise_std(privacy_budget, sensitivity)

        self.privacy_budget = privacy_budget
        self.sensitivity = sensitivity
        self.noise_generator = GaussianNoiseGenerator(seed)
        self.budget_tracker = PrivacyBudgetTracker(privacy_budget)

        logger.info(f"DP Engine initialized - budget={privacy_budget}, sensitivity={sensitivity}")

    def privatize(self,
                  update: ModelUpdate,
                  privacy_budget: Optional[float] = None,
                  sensitivity: Optional[float] = None,
                  round_number: int = 0) -> ModelUpdate:
        """
        Privatize an update and record the disclosure.

        Args:
            update: Local update to privatize
            privacy_budget: Override of the session budget
            sensitivity: Override of the default sensitivity
            round_number: Round the disclosure belongs to

        Returns:
            ModelUpdate: Noised update
        """
        budget = self.privacy_budget if privacy_budget is None else privacy_budget
        sens = self.sensitivity if sensitivity is None else sensitivity

        noised = privatize(update, budget, sens, generator=self.noise_generator.generator)
        self.budget_tracker.record_disclosure(round_number, budget, noise_std(budget, sens))

        return noised

    def get_privacy_analysis(self) -> Dict[str, Any]:
        """Get privacy configuration and budget status."""
        sigma = noise_std(self.privacy_budget, self.sensitivity)
        strength = "strong" if self.privacy_budget < 1.0 else "moderate" if self.privacy_budget < 5.0 else "weak"

        return {
            'privacy_budget': self.privacy_budget,
            'sensitivity': self.sensitivity,
            'noise_std': sigma,
            'privacy_strength': strength,
            'budget_status': self.budget_tracker.get_budget_status()
        }


def create_privacy_engine(privacy_budget: float = 1.0,
                          sensitivity: float = 1.0,
                          seed: Optional[int] = None) -> DifferentialPrivacyEngine:
    """
    Factory function to create differential privacy engine.

    Args:
        privacy_budget: Session privacy budget
        sensitivity: Sensitivity bound
        seed: Optional noise seed

    Returns:
        DifferentialPrivacyEngine: Configured privacy engine
    """
    return DifferentialPrivacyEngine(privacy_budget, sensitivity, seed)
