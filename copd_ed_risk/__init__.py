"""
COPD ED Risk

Rolls monthly medical claims up into one feature row per patient, labels
patients as costly ED users, and compares logistic regression, random forest
and SVM classifiers on a held-out partition.
"""

__version__ = "1.0.0"

from .data_generation import ClaimsDataGenerator
from .pipeline import (
    PipelineConfig,
    ClaimsCleaner,
    ClaimCategorizer,
    PatientWindowSplitter,
    PatientAggregator,
    MinorityOversampler,
)
from .utils import (
    ExperimentTracker,
    ModelEvaluator,
    ModelComparator,
)

__all__ = [
    'ClaimsDataGenerator',
    'PipelineConfig',
    'ClaimsCleaner',
    'ClaimCategorizer',
    'PatientWindowSplitter',
    'PatientAggregator',
    'MinorityOversampler',
    'ExperimentTracker',
    'ModelEvaluator',
    'ModelComparator',
]
