"""
Class-imbalance correction for the training partition.

Minority rows are synthesized with SMOTE (interpolation toward same-class
nearest neighbours) and the majority class is randomly under-sampled to a
percentage of the post-synthesis minority count.
"""

import logging
import time
from typing import Tuple

import pandas as pd
from imblearn.over_sampling import SMOTE
from imblearn.under_sampling import RandomUnderSampler

logger = logging.getLogger(__name__)


class ResamplingError(ValueError):
    """Raised when the training partition cannot be rebalanced."""


class MinorityOversampler:
    """SMOTE over-sampling combined with majority under-sampling.

    With ``perc_over=200`` every minority row yields two synthetic rows (the
    minority class triples); with ``perc_under=100`` the majority class is cut
    to the size of the enlarged minority class.
    """

    def __init__(self,
                 perc_over: int = 200,
                 perc_under: int = 100,
                 k_neighbors: int = 5,
                 random_state: int = 42):
        self.perc_over = perc_over
        self.perc_under = perc_under
        self.k_neighbors = k_neighbors
        self.random_state = random_state

    def target_counts(self, y: pd.Series) -> Tuple[object, int, object, int]:
        """Return (minority label, minority target, majority label, majority target)."""
        counts = y.value_counts()
        if len(counts) != 2:
            raise ResamplingError(
                f"Resampling needs exactly two classes in the training partition, found {counts.to_dict()}"
            )
        counts = counts.sort_values(ascending=False, kind='mergesort')
        majority, minority = counts.index[0], counts.index[-1]
        n_min, n_maj = int(counts[minority]), int(counts[majority])

        minority_target = n_min + (n_min * self.perc_over) // 100
        majority_target = min(n_maj, max(1, (minority_target * self.perc_under) // 100))
        return minority, minority_target, majority, majority_target

    def fit_resample(self, X: pd.DataFrame, y: pd.Series) -> Tuple[pd.DataFrame, pd.Series]:
        start_time = time.time()
        minority, minority_target, majority, majority_target = self.target_counts(y)
        n_min = int((y == minority).sum())

        if n_min <= self.k_neighbors:
            raise ResamplingError(
                f"Minority class '{minority}' has {n_min} training rows; SMOTE with "
                f"k_neighbors={self.k_neighbors} needs at least {self.k_neighbors + 1}"
            )

        logger.info(f"Resampling: {minority} {n_min} -> {minority_target}, "
                    f"{majority} {int((y == majority).sum())} -> {majority_target}")

        smote = SMOTE(
            sampling_strategy={minority: minority_target},
            k_neighbors=self.k_neighbors,
            random_state=self.random_state,
        )
        X_over, y_over = smote.fit_resample(X, y)

        under = RandomUnderSampler(
            sampling_strategy={majority: majority_target},
            random_state=self.random_state,
        )
        X_res, y_res = under.fit_resample(X_over, y_over)

        X_res = pd.DataFrame(X_res, columns=X.columns).reset_index(drop=True)
        y_res = pd.Series(y_res, name=y.name).reset_index(drop=True)

        elapsed_time = time.time() - start_time
        logger.info(f"Resampled training partition to {len(y_res)} rows "
                    f"({y_res.value_counts().to_dict()}) in {elapsed_time:.2f} seconds")
        return X_res, y_res
