"""Utility modules for the ML pipeline."""

from .experiment_tracking import ExperimentTracker, setup_experiment_tracking
from .model_utils import (
    ModelEvaluator,
    ModelComparator,
    rank_feature_importance
)

__all__ = [
    'ExperimentTracker',
    'setup_experiment_tracking',
    'ModelEvaluator',
    'ModelComparator',
    'rank_feature_importance'
]
