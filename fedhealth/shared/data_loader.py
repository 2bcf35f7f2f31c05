"""
Local sample loading for federated health learning.
Provides pre-extracted numeric feature/label samples to the local trainer.
"""

from pathlib import Path
from typing import Any, Dict, Optional
import logging

import numpy as np

from .interfaces import SampleProviderInterface
from .models import LocalSamples, ModelType

logger = logging.getLogger(__name__)


class NumpySampleProvider(SampleProviderInterface):
    """
    Loads samples from ``<data_dir>/<model_type>.npz`` files.

    Each archive must contain a 2-D ``features`` array and a 1-D ``labels``
    array of the same length.
    """

    def __init__(self, data_dir: str):
        """
        Initialize sample provider.

        Args:
            data_dir: Directory holding one .npz archive per model type
        """
        self.data_dir = Path(data_dir)

    def load_samples(self, model_type: ModelType) -> LocalSamples:
        path = self.data_dir / f"{model_type.value}.npz"
        if not path.exists():
            raise FileNotFoundError(f"No local samples for {model_type.value} at {path}")

        with np.load(path, allow_pickle=False) as archive:
            samples = LocalSamples(features=archive['features'], labels=archive['labels'])

        logger.info(f"Loaded {len(samples)} {model_type.value} samples "
                    f"with {samples.num_features} features from {path}")
        return samples


class InMemorySampleProvider(SampleProviderInterface):
    """Serves samples registered in memory, for simulations and tests."""

    def __init__(self, samples: Optional[Dict[ModelType, LocalSamples]] = None):
        self._samples: Dict[ModelType, LocalSamples] = dict(samples or {})

    def add_samples(self, model_type: ModelType, samples: LocalSamples) -> None:
        self._samples[model_type] = samples

    def load_samples(self, model_type: ModelType) -> LocalSamples:
        if model_type not in self._samples:
            raise KeyError(f"No local samples registered for {model_type.value}")
        return self._samples[model_type]


def generate_synthetic_samples(model_type: ModelType,
                               num_samples: int = 256,
                               num_features: int = 8,
                               seed: Optional[int] = None) -> LocalSamples:
    """
    Generate a synthetic sample set matching a model type's task.

    Classification types get 0/1 labels from a noisy linear rule, regression
    types get a noisy linear target.

    Args:
        model_type: Model family the samples are for
        num_samples: Number of samples
        num_features: Number of features per sample
        seed: Random seed

    Returns:
        LocalSamples: Generated samples
    """
    rng = np.random.default_rng(seed)
    features = rng.normal(size=(num_samples, num_features)).astype(np.float32)
    coefficients = rng.normal(size=num_features).astype(np.float32)
    signal = features @ coefficients + rng.normal(scale=0.1, size=num_samples)

    if model_type.task == "classification":
        labels = (signal > 0).astype(np.float32)
    else:
        labels = signal.astype(np.float32)

    return LocalSamples(features=features, labels=labels)


def describe_samples(samples: LocalSamples) -> Dict[str, Any]:
    """Summary statistics of a local sample set."""
    return {
        'num_samples': len(samples),
        'num_features': samples.num_features,
        'label_mean': float(np.mean(samples.labels)),
        'label_std': float(np.std(samples.labels)),
        'feature_means': samples.features.mean(axis=0).tolist()
    }
