"""
Model utilities for held-out evaluation, cross-family comparison and
variable importance ranking.
"""

import numpy as np
import pandas as pd
from typing import Dict, List, Optional
from sklearn.metrics import (
    roc_auc_score, f1_score, precision_score,
    accuracy_score, confusion_matrix,
)
import logging

logger = logging.getLogger(__name__)

REPORT_METRICS = ['accuracy', 'sensitivity', 'specificity', 'roc_auc']


class ModelEvaluator:
    """Held-out evaluation with the positive class encoded as 1."""

    def calculate_metrics(self,
                          y_true: np.ndarray,
                          y_pred: np.ndarray,
                          y_proba: np.ndarray) -> Dict[str, float]:
        """
        Calculate evaluation metrics.

        Args:
            y_true: True binary labels (1 = positive class)
            y_pred: Predicted binary labels
            y_proba: Predicted probabilities of the positive class

        Returns:
            Dictionary of metrics
        """
        y_true = np.asarray(y_true).astype(int)
        y_pred = np.asarray(y_pred).astype(int)
        y_proba = np.asarray(y_proba, dtype=float)

        metrics = {}
        metrics['accuracy'] = float(accuracy_score(y_true, y_pred))

        tn, fp, fn, tp = confusion_matrix(y_true, y_pred, labels=[0, 1]).ravel()
        metrics['true_negatives'] = int(tn)
        metrics['false_positives'] = int(fp)
        metrics['false_negatives'] = int(fn)
        metrics['true_positives'] = int(tp)

        metrics['sensitivity'] = tp / (tp + fn) if (tp + fn) > 0 else 0.0
        metrics['specificity'] = tn / (tn + fp) if (tn + fp) > 0 else 0.0
        metrics['precision'] = float(precision_score(y_true, y_pred, zero_division=0))
        metrics['f1_score'] = float(f1_score(y_true, y_pred, zero_division=0))

        if len(np.unique(y_true)) < 2:
            logger.warning("Only one class present in y_true; ROC AUC is undefined")
            metrics['roc_auc'] = float('nan')
        else:
            metrics['roc_auc'] = float(roc_auc_score(y_true, y_proba))

        metrics['sensitivity'] = float(metrics['sensitivity'])
        metrics['specificity'] = float(metrics['specificity'])
        return metrics


class ModelComparator:
    """Compare multiple models."""

    def __init__(self):
        self.results = {}

    def add_model(self, name: str, metrics: Dict[str, float]):
        """Add a family's held-out metrics for comparison."""
        self.results[name] = {metric: metrics.get(metric) for metric in REPORT_METRICS}

    def compare_models(self) -> pd.DataFrame:
        """One row per model, sorted by ROC AUC."""
        if not self.results:
            return pd.DataFrame(columns=['model'] + REPORT_METRICS)

        comparison_df = pd.DataFrame(self.results).T[REPORT_METRICS].astype(float)
        comparison_df = comparison_df.sort_values('roc_auc', ascending=False)
        return comparison_df.rename_axis('model').reset_index()

    def get_best_model(self, metric: str = 'roc_auc') -> Optional[str]:
        """Get name of best performing model."""
        if not self.results:
            return None

        best_score = -np.inf
        best_model = None

        for model_name, metrics in self.results.items():
            score = metrics.get(metric)
            if score is not None and not np.isnan(score) and score > best_score:
                best_score = score
                best_model = model_name

        return best_model


def rank_feature_importance(importances: np.ndarray, feature_names: List[str]) -> pd.DataFrame:
    """Scale importances so the strongest feature scores 100 and sort descending."""
    importances = np.asarray(importances, dtype=float)
    if len(importances) != len(feature_names):
        raise ValueError(f"Got {len(importances)} importances for {len(feature_names)} features")

    top = importances.max() if len(importances) else 0.0
    scaled = importances / top * 100.0 if top > 0 else np.zeros_like(importances)
    ranked = pd.DataFrame({'feature': feature_names, 'importance': scaled})
    ranked = ranked.sort_values('importance', ascending=False, kind='mergesort').reset_index(drop=True)
    ranked['rank'] = np.arange(1, len(ranked) + 1)
    return ranked
