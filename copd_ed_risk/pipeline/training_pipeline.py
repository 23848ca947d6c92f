"""
Main Training Pipeline
"""

from __future__ import annotations

import warnings
# saga on small, resampled partitions often stops at max_iter
from sklearn.exceptions import ConvergenceWarning
warnings.filterwarnings("ignore", category=ConvergenceWarning)

import argparse
import contextlib
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import joblib
import numpy as np
import pandas as pd
import yaml

import dask.dataframe as dd
from dask.diagnostics.progress import ProgressBar

import optuna
from optuna.trial import TrialState
from sklearn.ensemble import RandomForestClassifier
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import accuracy_score, f1_score, roc_auc_score
from sklearn.model_selection import StratifiedKFold, train_test_split
from sklearn.svm import SVC

from copd_ed_risk.pipeline.config import ConfigurationError, PipelineConfig
from copd_ed_risk.pipeline.feature_engineering import (
    COSTLY,
    ClaimCategorizer,
    PatientAggregator,
    PatientWindowSplitter,
    create_preprocessing_pipeline,
)
from copd_ed_risk.pipeline.preprocessing import ClaimsCleaner, DataScaler, DataValidator, MissingValueHandler
from copd_ed_risk.pipeline.resampling import MinorityOversampler
from copd_ed_risk.utils.experiment_tracking import ExperimentTracker, setup_experiment_tracking
from copd_ed_risk.utils.model_utils import (
    REPORT_METRICS,
    ModelComparator,
    ModelEvaluator,
    rank_feature_importance,
)

logger = logging.getLogger(__name__)

# Never used as predictors: identifier, label, and the count the label is derived from
NON_FEATURE_COLUMNS = ['patient_id', 'label', 'ed_count_label']


# =====================
# Model families
# =====================
@dataclass
class ModelFamily:
    """A classifier family seen only through fit / predict / predict_proba.

    ``importance`` is an optional extension for families that expose
    per-feature importances.
    """
    name: str
    factory: Callable[[Dict[str, Any]], Any]
    param_grid: Dict[str, List[Any]]
    importance: Optional[Callable[[Any, List[str]], pd.DataFrame]] = None

    def build(self, params: Dict[str, Any]):
        return self.factory(dict(params))

    def constrain_grid(self, n_features: int) -> Dict[str, List[Any]]:
        """Drop grid values a dataset with ``n_features`` columns cannot support."""
        grid = {name: list(values) for name, values in self.param_grid.items()}
        if 'max_features' in grid:
            capped: List[Any] = []
            for value in grid['max_features']:
                if isinstance(value, int) and not isinstance(value, bool):
                    value = min(value, n_features)
                if value not in capped:
                    capped.append(value)
            if capped != grid['max_features']:
                logger.warning(f"[{self.name}] max_features grid capped at {n_features} features: {capped}")
            grid['max_features'] = capped
        return grid


def _forest_importance(model, feature_names: List[str]) -> pd.DataFrame:
    return rank_feature_importance(model.feature_importances_, feature_names)


def build_model_families(config: PipelineConfig) -> Dict[str, ModelFamily]:
    seed = config.random_seed
    factories: Dict[str, Tuple[Callable[[Dict[str, Any]], Any], Optional[Callable]]] = {
        "logistic_regression": (
            lambda p: LogisticRegression(
                penalty="elasticnet", solver="saga", l1_ratio=0.5,
                max_iter=5000, random_state=seed, **p,
            ),
            None,
        ),
        "random_forest": (
            lambda p: RandomForestClassifier(random_state=seed, n_jobs=config.n_jobs, **p),
            _forest_importance,
        ),
        "svm": (
            lambda p: SVC(kernel="rbf", probability=True, random_state=seed, **p),
            None,
        ),
    }
    families = {}
    for name in config.families:
        factory, importance = factories[name]
        families[name] = ModelFamily(name, factory, config.param_grids[name], importance)
    return families


# =====================
# Results
# =====================
@dataclass
class EvaluationReport:
    """Flat held-out evaluation record, comparable across families."""
    model_name: str
    accuracy: float
    sensitivity: float
    specificity: float
    roc_auc: float
    cv_score: float
    best_params: Dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> Dict[str, Any]:
        return {"model": self.model_name, **{m: getattr(self, m) for m in REPORT_METRICS}}


@dataclass
class TrainedModel:
    family: str
    model: Any
    report: EvaluationReport
    metrics: Dict[str, float]
    feature_importance: Optional[pd.DataFrame] = None


# =====================
# Grid search with stratified k-fold CV
# =====================
class HyperparameterSearch:
    """Exhaustive grid search driven by an optuna ``GridSampler``.

    Folds whose training or validation part contains a single class are
    skipped; a grid point with no usable fold is recorded as a failed trial.
    """

    def __init__(self, n_splits: int = 5, metric: str = "accuracy",
                 random_state: int = 42, n_jobs: int = 1):
        self.n_splits = n_splits
        self.metric = metric
        self.random_state = random_state
        self.n_jobs = n_jobs

    def _score(self, model, X_va: pd.DataFrame, y_va: pd.Series) -> float:
        if self.metric == "roc_auc":
            positive = list(model.classes_).index(1)
            return roc_auc_score(y_va, model.predict_proba(X_va)[:, positive])
        y_pred = model.predict(X_va)
        if self.metric == "f1":
            return f1_score(y_va, y_pred, zero_division=0)
        return accuracy_score(y_va, y_pred)

    def search(self, family: ModelFamily, X: pd.DataFrame, y: pd.Series,
               param_grid: Optional[Dict[str, List[Any]]] = None) -> Tuple[Dict[str, Any], float]:
        grid = param_grid or family.param_grid
        n_trials = int(np.prod([len(values) for values in grid.values()]))
        skf = StratifiedKFold(n_splits=self.n_splits, shuffle=True, random_state=self.random_state)
        cv_splits = list(skf.split(X, y))

        def objective(trial: optuna.Trial):
            params = {name: trial.suggest_categorical(name, values) for name, values in grid.items()}

            fold_scores: List[float] = []
            for fold, (tr, va) in enumerate(cv_splits, 1):
                y_tr, y_va = y.iloc[tr], y.iloc[va]
                if y_tr.nunique() < 2 or y_va.nunique() < 2:
                    logger.warning(f"[{family.name}] Skipping degenerate fold {fold} for {params}")
                    continue
                model = family.build(params)
                model.fit(X.iloc[tr], y_tr)
                fold_scores.append(float(self._score(model, X.iloc[va], y_va)))

            if not fold_scores:
                return float("nan")
            trial.set_user_attr("n_folds_scored", len(fold_scores))
            return float(np.mean(fold_scores))

        study = optuna.create_study(
            direction="maximize",
            sampler=optuna.samplers.GridSampler(grid, seed=self.random_state),
            study_name=f"{family.name}_grid",
        )
        study.optimize(objective, n_trials=n_trials, n_jobs=self.n_jobs, show_progress_bar=False)

        completed = [t for t in study.trials if t.state == TrialState.COMPLETE]
        if not completed:
            raise ValueError(
                f"[{family.name}] No hyperparameter combination produced a usable CV fold"
            )

        best = dict(study.best_trial.params)
        logger.info(f"[{family.name}] Best params: {best} (cv {self.metric}={study.best_value:.4f})")
        return best, float(study.best_value)


def train_and_evaluate(family: ModelFamily,
                       param_grid: Dict[str, List[Any]],
                       X_train: pd.DataFrame, y_train: pd.Series,
                       X_test: pd.DataFrame, y_test: pd.Series,
                       search: HyperparameterSearch) -> TrainedModel:
    """Select hyperparameters on the training partition, then score once on the test partition."""
    start_time = time.time()
    best_params, cv_score = search.search(family, X_train, y_train, param_grid)

    model = family.build(best_params)
    model.fit(X_train, y_train)

    # Test data is touched only after selection is final
    positive = list(model.classes_).index(1)
    y_proba = model.predict_proba(X_test)[:, positive]
    y_pred = model.predict(X_test)
    metrics = ModelEvaluator().calculate_metrics(y_test.to_numpy(), y_pred, y_proba)

    report = EvaluationReport(
        model_name=family.name,
        accuracy=metrics["accuracy"],
        sensitivity=metrics["sensitivity"],
        specificity=metrics["specificity"],
        roc_auc=metrics["roc_auc"],
        cv_score=cv_score,
        best_params=best_params,
    )

    importance = None
    if family.importance is not None:
        importance = family.importance(model, list(X_train.columns))

    logger.info(f"[{family.name}] accuracy={report.accuracy:.3f} sensitivity={report.sensitivity:.3f} "
                f"specificity={report.specificity:.3f} auc={report.roc_auc:.3f} "
                f"({time.time() - start_time:.1f}s)")
    return TrainedModel(family.name, model, report, metrics, importance)


@dataclass
class ModelData:
    X_train: pd.DataFrame
    X_test: pd.DataFrame
    y_train: pd.Series
    y_test: pd.Series


# =====================
# EDRiskPipeline
# =====================
class EDRiskPipeline:
    """Claims -> patient features -> three classifier families -> comparison report."""

    def __init__(self, config: PipelineConfig):
        self.config = config
        self.claims_: Optional[pd.DataFrame] = None
        self.patient_features_: Optional[pd.DataFrame] = None
        self.preprocessing_steps: List[Any] = []
        self.scaler: Optional[DataScaler] = None
        self.patient_imputer: Optional[MissingValueHandler] = None
        self.trained_models: Dict[str, TrainedModel] = {}
        self.comparator = ModelComparator()
        self.best_model_name: Optional[str] = None

        tracking_cfg = dict(config.mlflow)
        self.experiment_tracker: Optional[ExperimentTracker] = setup_experiment_tracking({
            "experiment_tracking": {"backend": tracking_cfg.pop("backend", "mlflow"), "mlflow": tracking_cfg}
        })

    # ---------- Data ----------
    def load_data(self, data_path: str) -> pd.DataFrame:
        """Load a claims extract (CSV or parquet file/dir) with Dask, falling back to pandas."""
        logger.info(f"Loading claims from {data_path} using Dask")
        p = Path(data_path)

        try:
            if p.suffix.lower() == ".csv":
                ddf = dd.read_csv(p, assume_missing=True, dtype=str)
            else:
                ddf = dd.read_parquet(p)
            logger.info(f"Dask DataFrame partitions: {ddf.npartitions}")

            with ProgressBar():
                df = ddf.compute()
        except Exception as e:
            logger.warning(f"Dask loading failed: {e}. Falling back to pandas.")
            if p.suffix.lower() == ".csv":
                df = pd.read_csv(p, dtype=str)
            else:
                df = pd.read_parquet(p)

        df = df.reset_index(drop=True)
        logger.info(f"Loaded claims shape: {df.shape}")
        return df

    def validate_data(self, df: pd.DataFrame) -> Dict[str, List[str]]:
        logger.info("Validating claims data quality...")
        claims = df.rename(columns=self.config.column_map) if self.config.column_map else df
        DataValidator.validate_schema(claims)
        validator = DataValidator()
        validator.setup_claims_rules()
        violations = validator.validate(claims)
        if violations:
            logger.warning(f"Found {len(violations)} data quality issues: {violations}")
        else:
            logger.info("Data validation passed")
        return violations

    # ---------- Claims -> patients ----------
    def build_patient_table(self, raw_claims: pd.DataFrame) -> pd.DataFrame:
        """Clean, categorize, window and aggregate claims into one row per patient."""
        claims = ClaimsCleaner(self.config).transform(raw_claims)
        # Roster is taken before injury exclusion so every adult patient keeps a row
        roster = PatientAggregator.build_roster(claims)

        claims = ClaimCategorizer().transform(claims)
        if claims.empty:
            raise ConfigurationError("No claims left after diagnosis filtering")
        claims = PatientWindowSplitter(window_days=self.config.window_days).transform(claims)
        self.claims_ = claims

        features = PatientAggregator(self.config).transform(claims, roster=roster)
        self.patient_features_ = features
        return features

    def prepare_features(self, features: pd.DataFrame) -> Tuple[pd.DataFrame, pd.Series]:
        if "label" not in features.columns:
            raise ValueError("Target column 'label' not found")
        y = (features["label"] == COSTLY).astype(int).rename("costly")
        X = features.drop(columns=[c for c in NON_FEATURE_COLUMNS if c in features.columns])
        logger.info(f"Prepared features: {len(X.columns)} columns (excluded: {NON_FEATURE_COLUMNS})")
        return X, y

    # ---------- Split / preprocess ----------
    def split(self, X: pd.DataFrame, y: pd.Series) -> Tuple[pd.DataFrame, pd.DataFrame, pd.Series, pd.Series]:
        class_counts = y.value_counts()
        if len(class_counts) < 2 or class_counts.min() < 2:
            raise ConfigurationError(
                f"Need at least two patients of each label to split; got {class_counts.to_dict()}"
            )
        X_train, X_test, y_train, y_test = train_test_split(
            X, y,
            test_size=self.config.test_size,
            stratify=y,
            random_state=self.config.random_seed,
        )
        logger.info(f"Split {len(X)} patients into {len(X_train)} train / {len(X_test)} test")
        return (X_train.reset_index(drop=True), X_test.reset_index(drop=True),
                y_train.reset_index(drop=True), y_test.reset_index(drop=True))

    def _fit_transform_steps(self, fit_frame: pd.DataFrame, *frames: pd.DataFrame) -> List[pd.DataFrame]:
        self.preprocessing_steps = create_preprocessing_pipeline(self.config)
        outputs = list(frames)
        for step in self.preprocessing_steps:
            step.fit(fit_frame)
            fit_frame = step.transform(fit_frame)
            outputs = [step.transform(frame) for frame in outputs]
        return outputs

    def prepare_model_data(self, features: pd.DataFrame) -> ModelData:
        """Clamp, encode, split, rebalance and scale the patient table."""
        X, y = self.prepare_features(features)

        if self.config.global_statistics:
            # Clamp bounds and encoder categories use every patient (train + test)
            (X,) = self._fit_transform_steps(X, X)
            X_train, X_test, y_train, y_test = self.split(X, y)
        else:
            X_train, X_test, y_train, y_test = self.split(X, y)
            self.patient_imputer = MissingValueHandler().fit(X_train)
            X_train = self.patient_imputer.transform(X_train)
            X_test = self.patient_imputer.transform(X_test)
            X_train, X_test = self._fit_transform_steps(X_train, X_train, X_test)

        X_train = X_train.astype(float)
        X_test = X_test.astype(float)

        resampler = MinorityOversampler(
            perc_over=self.config.oversample_percent,
            perc_under=self.config.undersample_percent,
            k_neighbors=self.config.k_neighbors,
            random_state=self.config.random_seed,
        )
        X_train, y_train = resampler.fit_resample(X_train, y_train)

        self.scaler = DataScaler(method=self.config.scaling_method).fit(X_train)
        X_train = self.scaler.transform(X_train)
        X_test = self.scaler.transform(X_test)
        return ModelData(X_train, X_test, y_train, y_test)

    # ---------- Training ----------
    def train_models(self, data: ModelData) -> pd.DataFrame:
        search = HyperparameterSearch(
            n_splits=self.config.cv_folds,
            metric=self.config.opt_metric,
            random_state=self.config.random_seed,
            n_jobs=self.config.n_jobs,
        )
        families = build_model_families(self.config)
        n_features = data.X_train.shape[1]

        for name, family in families.items():
            logger.info(f"Training model family: {name}")
            trained = train_and_evaluate(
                family, family.constrain_grid(n_features),
                data.X_train, data.y_train, data.X_test, data.y_test,
                search,
            )
            self.trained_models[name] = trained
            self.comparator.add_model(name, trained.metrics)
            if self.experiment_tracker:
                self.experiment_tracker.log_params(trained.report.best_params, prefix=name)
                self.experiment_tracker.log_metrics(
                    {f"{name}_{metric}": value for metric, value in trained.metrics.items()
                     if value is not None and np.isfinite(value)}
                )

        # All families are trained before a winner is named
        self.best_model_name = self.comparator.get_best_model("roc_auc")
        logger.info(f"Best model by held-out AUC: {self.best_model_name}")
        return self.comparator.compare_models()

    def feature_importance(self) -> Optional[pd.DataFrame]:
        for trained in self.trained_models.values():
            if trained.feature_importance is not None:
                return trained.feature_importance
        return None

    def run(self, raw_claims: pd.DataFrame) -> pd.DataFrame:
        """Run every stage on an in-memory claims table and return the comparison table."""
        self.validate_data(raw_claims)
        features = self.build_patient_table(raw_claims)
        data = self.prepare_model_data(features)
        return self.train_models(data)

    # ---------- Artifacts ----------
    def save_artifacts(self, output_dir: str, comparison: pd.DataFrame):
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        logger.info(f"Saving artifacts to {out}")

        for name, trained in self.trained_models.items():
            joblib.dump(trained.model, out / f"{name}.joblib")
        joblib.dump({
            "patient_imputer": self.patient_imputer,
            "steps": self.preprocessing_steps,
            "scaler": self.scaler,
        }, out / "preprocessor.joblib")

        comparison.to_csv(out / "model_comparison.csv", index=False)
        importance = self.feature_importance()
        if importance is not None:
            importance.to_csv(out / "feature_importance.csv", index=False)
        if self.patient_features_ is not None:
            self.patient_features_.to_csv(out / "patient_features.csv", index=False)

        def convert_numpy_types(obj):
            """Convert numpy types to native Python types for YAML serialization."""
            if isinstance(obj, dict):
                return {k: convert_numpy_types(v) for k, v in obj.items()}
            elif isinstance(obj, list):
                return [convert_numpy_types(v) for v in obj]
            elif hasattr(obj, 'item'):  # numpy scalar
                return obj.item()
            elif hasattr(obj, 'tolist'):  # numpy array
                return obj.tolist()
            else:
                return obj

        metrics = convert_numpy_types({
            name: {**trained.metrics, "cv_score": trained.report.cv_score,
                   "best_params": trained.report.best_params}
            for name, trained in self.trained_models.items()
        })
        metrics["best_model"] = self.best_model_name
        (out / "metrics.yaml").write_text(yaml.dump(metrics), encoding="utf-8")
        self.config.save(out / "training_config.yaml")

        if self.experiment_tracker:
            self.experiment_tracker.log_dict(metrics, "metrics.yaml")
            self.experiment_tracker.log_dict(self.config.to_dict(), "config.yaml")
            for name, trained in self.trained_models.items():
                self.experiment_tracker.log_model(trained.model, name)

        logger.info("Artifacts saved successfully")

    # ---------- Orchestration ----------
    def run_pipeline(self, data_path: str, output_dir: str) -> Dict[str, Any]:
        logger.info("Starting ED utilization risk pipeline...")
        experiment_name = self.config.mlflow.get("experiment_name", "copd_ed_risk")
        run_context = (self.experiment_tracker.start_run(experiment_name)
                       if self.experiment_tracker else contextlib.nullcontext())

        with run_context:
            if self.experiment_tracker:
                self.experiment_tracker.log_params(self.config.to_dict())

            raw_claims = self.load_data(data_path)
            comparison = self.run(raw_claims)
            self.save_artifacts(output_dir, comparison)

            if self.experiment_tracker:
                self.experiment_tracker.log_artifacts(output_dir)

        logger.info("Pipeline completed successfully!")
        return {
            "comparison": comparison,
            "best_model": self.best_model_name,
            "feature_importance": self.feature_importance(),
        }


# =====================
# CLI entrypoint
# =====================

def main():
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="Train and compare ED-utilization risk models")
    parser.add_argument("--config", type=str, default=None, help="Path to training configuration file")
    parser.add_argument("--data", type=str, required=True, help="Path to claims data (parquet dir/file or CSV)")
    parser.add_argument("--output", type=str, default="./models", help="Output directory for artifacts")
    args = parser.parse_args()

    config = PipelineConfig.from_yaml(args.config) if args.config else PipelineConfig()

    pipeline = EDRiskPipeline(config)
    result = pipeline.run_pipeline(args.data, args.output)

    print("\nModel comparison (held-out test partition):")
    print(result["comparison"].to_string(index=False, float_format=lambda v: f"{v:.3f}"))
    if result["feature_importance"] is not None:
        print("\nRandom forest variable importance:")
        print(result["feature_importance"].to_string(index=False, float_format=lambda v: f"{v:.1f}"))
    print(f"\nBest model: {result['best_model']}")
    print("Training completed! Artifacts in:", args.output)


if __name__ == "__main__":
    main()
