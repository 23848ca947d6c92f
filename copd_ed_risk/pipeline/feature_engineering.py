"""
Feature Engineering Pipeline

This module categorizes claims by diagnosis code, splits each patient's claim
history into a feature window and a label window, rolls the claims up into one
row per patient, and applies the patient-level clamping and encoding steps.
"""

import re
import pandas as pd
import numpy as np
import logging
import time
from enum import Enum
from typing import Dict, List, Optional, Any

import dask
from dask.delayed import delayed
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.preprocessing import LabelEncoder

from .config import COUNT_COLUMNS, DEMOGRAPHIC_COLUMNS, PipelineConfig

logger = logging.getLogger(__name__)


class ClaimCategory(str, Enum):
    COPD = 'COPD'
    RESPIRATORY_NON_COPD = 'RespiratoryNonCOPD'
    NON_RESPIRATORY = 'NonRespiratory'


RESPIRATORY_CATEGORIES = [ClaimCategory.COPD.value, ClaimCategory.RESPIRATORY_NON_COPD.value]

COSTLY = 'Costly'
NON_COSTLY = 'NonCostly'

# ICD-10 J40-J47: chronic lower respiratory diseases
COPD_PATTERN = re.compile(r'^J4[0-7]')
RESPIRATORY_PATTERN = re.compile(r'^J')
# ICD-10 chapters XIX/XX: injury, poisoning and external causes
INJURY_PATTERN = re.compile(r'^[STVWXY]')


def categorize(diagnosis_code: Optional[str]) -> ClaimCategory:
    """Classify a single diagnosis code."""
    if diagnosis_code is None or pd.isna(diagnosis_code):
        return ClaimCategory.NON_RESPIRATORY
    code = str(diagnosis_code)
    if COPD_PATTERN.match(code):
        return ClaimCategory.COPD
    if RESPIRATORY_PATTERN.match(code):
        return ClaimCategory.RESPIRATORY_NON_COPD
    return ClaimCategory.NON_RESPIRATORY


def categorize_codes(codes: pd.Series) -> pd.Series:
    """Vectorized ``categorize`` returning category values as strings."""
    text = codes.astype(object).where(codes.notna(), '').astype(str)
    categories = np.select(
        [text.str.match(COPD_PATTERN.pattern), text.str.match(RESPIRATORY_PATTERN.pattern)],
        [ClaimCategory.COPD.value, ClaimCategory.RESPIRATORY_NON_COPD.value],
        default=ClaimCategory.NON_RESPIRATORY.value,
    )
    return pd.Series(categories, index=codes.index, name='claim_category')


def is_injury_code(codes: pd.Series) -> pd.Series:
    text = codes.astype(object).where(codes.notna(), '').astype(str)
    return text.str.match(INJURY_PATTERN.pattern)


def assign_label(ed_count_label: int, threshold: int = 10) -> str:
    return COSTLY if ed_count_label >= threshold else NON_COSTLY


def assign_labels(ed_counts: pd.Series, threshold: int = 10) -> pd.Series:
    return pd.Series(np.where(ed_counts >= threshold, COSTLY, NON_COSTLY),
                     index=ed_counts.index, name='label')


class ClaimCategorizer(BaseEstimator, TransformerMixin):
    """Tag each claim with its category, then drop injury/external-cause claims."""

    def __init__(self, exclude_injuries: bool = True):
        self.exclude_injuries = exclude_injuries

    def fit(self, X: pd.DataFrame, y=None):
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        if 'diagnosis_code' not in X.columns:
            raise ValueError("DataFrame must contain a 'diagnosis_code' column")

        X_transformed = X.copy()
        # Categories are assigned before any filtering
        X_transformed['claim_category'] = categorize_codes(X_transformed['diagnosis_code'])

        if self.exclude_injuries:
            injury = is_injury_code(X_transformed['diagnosis_code'])
            if injury.any():
                logger.info(f"Excluding {int(injury.sum())} injury/external-cause claims")
            X_transformed = X_transformed.loc[~injury].copy()

        counts = X_transformed['claim_category'].value_counts().to_dict()
        logger.info(f"Claim categories: {counts}")
        return X_transformed


class PatientWindowSplitter(BaseEstimator, TransformerMixin):
    """Assign every claim to its patient's feature window or label window.

    Windows are anchored to each patient's own latest claim month:
        feature window:  latest - window_days <  month <= latest
        label window:    earliest             <= month <= latest - window_days
    """

    def __init__(self, window_days: int = 730):
        self.window_days = window_days

    def fit(self, X: pd.DataFrame, y=None):
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        if 'patient_id' not in X.columns or 'claim_month' not in X.columns:
            raise ValueError("DataFrame must contain 'patient_id' and 'claim_month' columns")

        X_transformed = X.copy()
        grouped = X_transformed.groupby('patient_id')['claim_month']
        latest = grouped.transform('max')
        boundary = latest - pd.Timedelta(days=self.window_days)

        X_transformed['window_latest'] = latest
        X_transformed['window_boundary'] = boundary
        X_transformed['in_feature_window'] = (X_transformed['claim_month'] > boundary) & \
                                             (X_transformed['claim_month'] <= latest)
        X_transformed['in_label_window'] = X_transformed['claim_month'] <= boundary

        logger.info(f"Windowed {len(X_transformed)} claims: "
                    f"{int(X_transformed['in_feature_window'].sum())} in feature window, "
                    f"{int(X_transformed['in_label_window'].sum())} in label window")
        return X_transformed


class PatientAggregator:
    """Reduce windowed claims to one feature/label row per patient."""

    def __init__(self, config: PipelineConfig):
        self.config = config

    @staticmethod
    def build_roster(claims: pd.DataFrame) -> pd.DataFrame:
        """One row per patient holding the demographics of the patient's first claim."""
        ordered = claims.sort_values(['patient_id', 'claim_month'], kind='mergesort')
        available = [col for col in DEMOGRAPHIC_COLUMNS if col in ordered.columns]
        return ordered.groupby('patient_id')[available].first()

    def transform(self, claims: pd.DataFrame, roster: Optional[pd.DataFrame] = None) -> pd.DataFrame:
        """
        Aggregate windowed claims per patient.

        Args:
            claims: Categorized and windowed claims
            roster: Optional patient roster (index ``patient_id``); patients without
                any remaining claims still get a row with zero counts

        Returns:
            DataFrame with one row per patient, ``patient_id`` as a column
        """
        start_time = time.time()
        required = ['patient_id', 'claim_category', 'in_feature_window', 'in_label_window']
        missing = [col for col in required if col not in claims.columns]
        if missing:
            raise ValueError(f"Claims must be categorized and windowed first; missing {missing}")

        if roster is None:
            roster = self.build_roster(claims)

        counts = self._count_partitioned(claims)
        counts = counts.reindex(roster.index, fill_value=0).fillna(0).astype(int)

        features = roster.join(counts)
        features['label'] = assign_labels(features['ed_count_label'], self.config.costly_threshold)
        features = features.rename_axis('patient_id').reset_index().sort_values('patient_id')
        features = features.reset_index(drop=True)

        elapsed_time = time.time() - start_time
        n_costly = int((features['label'] == COSTLY).sum())
        logger.info(f"Aggregated {len(features)} patients ({n_costly} {COSTLY}) "
                    f"in {elapsed_time:.2f} seconds")
        return features

    def _count_partitioned(self, claims: pd.DataFrame) -> pd.DataFrame:
        n_partitions = max(1, int(self.config.n_partitions))
        patient_ids = claims['patient_id'].unique()
        if n_partitions == 1 or len(patient_ids) < n_partitions:
            return self._count_claims(claims)

        logger.info(f"Aggregating {len(patient_ids)} patients across {n_partitions} dask tasks")
        tasks = []
        for chunk in np.array_split(patient_ids, n_partitions):
            chunk_claims = claims.loc[claims['patient_id'].isin(chunk)]
            tasks.append(delayed(self._count_claims)(chunk_claims))
        results = dask.compute(*tasks, scheduler='threads')
        return pd.concat(results)

    def _count_claims(self, claims: pd.DataFrame) -> pd.DataFrame:
        ed = (claims['procedure_location_code'] == self.config.ed_location_code) & \
             (claims['financial_subcategory'] == self.config.ed_financial_subcategory)
        feature = claims['in_feature_window'].astype(bool)
        label = claims['in_label_window'].astype(bool)
        category = claims['claim_category']

        flags = pd.DataFrame({
            'patient_id': claims['patient_id'],
            'copd_ed_count': (feature & ed & (category == ClaimCategory.COPD.value)).astype(int),
            'ed_count_feature': (feature & ed).astype(int),
            'ed_count_label': (label & ed).astype(int),
            'total_claims_feature': feature.astype(int),
            'respiratory_claims_feature': (feature & category.isin(RESPIRATORY_CATEGORIES)).astype(int),
        })
        counts = flags.groupby('patient_id').sum()

        distinct = claims.loc[feature].groupby('patient_id')['diagnosis_code'].nunique()
        counts['distinct_diagnoses_feature'] = distinct.reindex(counts.index, fill_value=0)
        return counts[COUNT_COLUMNS + ['ed_count_label']]


class OutlierClamper(BaseEstimator, TransformerMixin):
    """Clamp numeric columns to the Tukey fences [Q1 - k*IQR, Q3 + k*IQR]."""

    def __init__(self, columns: Optional[List[str]] = None, multiplier: float = 1.5):
        self.columns = columns
        self.multiplier = multiplier
        self.lower_: Dict[str, float] = {}
        self.upper_: Dict[str, float] = {}

    def fit(self, X: pd.DataFrame, y=None):
        columns = self.columns or X.select_dtypes(include=[np.number]).columns.tolist()
        self.lower_, self.upper_ = {}, {}
        for col in columns:
            if col not in X.columns:
                continue
            values = X[col].astype(float)
            q1, q3 = values.quantile(0.25), values.quantile(0.75)
            h = self.multiplier * (q3 - q1)
            self.lower_[col] = float(q1 - h)
            self.upper_[col] = float(q3 + h)
        logger.info(f"Fitted IQR clamp bounds for {len(self.lower_)} columns")
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        X_transformed = X.copy()
        for col, lower in self.lower_.items():
            if col not in X_transformed.columns:
                continue
            before = X_transformed[col].astype(float)
            X_transformed[col] = before.clip(lower=lower, upper=self.upper_[col])
            n_clamped = int(((before != X_transformed[col]) & before.notna()).sum())
            if n_clamped:
                logger.info(f"Clamped {n_clamped} values of {col} to "
                            f"[{lower:.2f}, {self.upper_[col]:.2f}]")
        return X_transformed

    def get_bounds(self) -> Dict[str, Dict[str, float]]:
        return {col: {'lower': self.lower_[col], 'upper': self.upper_[col]} for col in self.lower_}


class CategoricalEncoder(BaseEstimator, TransformerMixin):
    """Expand nominal columns into indicator columns (or label-encode them)."""

    def __init__(self,
                 method: str = 'one_hot',
                 columns: Optional[List[str]] = None):
        """
        Initialize categorical encoder.

        Args:
            method: Encoding method ('one_hot', 'label_encoding')
            columns: Columns to encode; defaults to all object/category columns
        """
        self.method = method
        self.columns = columns
        self.encoders_ = {}
        self.categories_: Dict[str, List[str]] = {}
        self.categorical_features_ = []

    def fit(self, X: pd.DataFrame, y: Optional[pd.Series] = None):
        """Fit the categorical encoder."""
        start_time = time.time()
        logger.info(f"Fitting categorical encoder with method: {self.method}")

        if self.columns is not None:
            self.categorical_features_ = [col for col in self.columns if col in X.columns]
        else:
            self.categorical_features_ = X.select_dtypes(include=['object', 'category', 'string']).columns.tolist()

        for feature in self.categorical_features_:
            values = X[feature].astype(str)
            if self.method == 'one_hot':
                self.categories_[feature] = sorted(values.unique().tolist())
            elif self.method == 'label_encoding':
                encoder = LabelEncoder()
                encoder.fit(values)
                self.encoders_[feature] = encoder
            else:
                raise ValueError(f"Unknown encoding method: {self.method}")

        elapsed_time = time.time() - start_time
        logger.info(f"Fitted categorical encoder for {len(self.categorical_features_)} features in {elapsed_time:.2f} seconds")
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        """Transform categorical features."""
        start_time = time.time()
        logger.info(f"Transforming categorical features using {self.method}")

        X_transformed = X.copy()

        for feature in self.categorical_features_:
            if feature not in X_transformed.columns:
                continue

            values = X_transformed[feature].astype(str)
            if self.method == 'one_hot':
                # Categories unseen at fit time get all-zero indicators
                indicators = pd.DataFrame(
                    {f'{feature}_{category}': (values == category).astype(int)
                     for category in self.categories_[feature]},
                    index=X_transformed.index,
                )
                X_transformed = pd.concat([X_transformed.drop(columns=[feature]), indicators], axis=1)

            elif self.method == 'label_encoding':
                encoder = self.encoders_[feature]
                known = values.isin(encoder.classes_)
                encoded = np.full(len(values), -1)
                encoded[known.to_numpy()] = encoder.transform(values[known])
                X_transformed[feature] = encoded

        elapsed_time = time.time() - start_time
        logger.info(f"Categorical transformation completed in {elapsed_time:.2f} seconds")
        return X_transformed

    def get_feature_names_out(self, input_features=None):
        if self.method != 'one_hot':
            return list(self.categorical_features_)
        return [f'{feature}_{category}'
                for feature in self.categorical_features_
                for category in self.categories_[feature]]


def create_preprocessing_pipeline(config: PipelineConfig) -> List[Any]:
    """Create the patient-level clamp/encode steps from configuration."""
    start_time = time.time()
    logger.info("Creating preprocessing pipeline...")

    pipeline_steps = [
        OutlierClamper(columns=config.clamp_columns, multiplier=config.iqr_multiplier),
        CategoricalEncoder(method='one_hot', columns=config.categorical_columns),
    ]

    elapsed_time = time.time() - start_time
    logger.info(f"Created preprocessing pipeline with {len(pipeline_steps)} steps in {elapsed_time:.2f} seconds")
    return pipeline_steps
