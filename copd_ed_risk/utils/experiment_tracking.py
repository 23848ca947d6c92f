"""
MLflow experiment tracking for training runs.

Tracking is best effort: a failing MLflow call is logged as a warning and the
training run carries on.
"""

import time
import logging
from typing import Any, Callable, Dict, Optional

import mlflow
import mlflow.sklearn

logger = logging.getLogger(__name__)


def _resolve_experiment_id(name: str) -> Optional[str]:
    """Create ``name`` or reuse it; a deleted experiment gets a timestamped replacement."""
    try:
        return mlflow.create_experiment(name)
    except Exception:
        existing = mlflow.get_experiment_by_name(name)
        if existing and existing.lifecycle_stage != "deleted":
            return existing.experiment_id
    return None


class ExperimentTracker:
    """Thin MLflow wrapper configured from the ``mlflow`` config section."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.tracking_uri = config.get('tracking_uri', 'file:./mlruns')
        self.experiment_name = config.get('experiment_name', 'copd_ed_risk')

        mlflow.set_tracking_uri(self.tracking_uri)

        experiment_id = _resolve_experiment_id(self.experiment_name)
        if experiment_id is None:
            replacement = f"{self.experiment_name}_{int(time.time())}"
            try:
                experiment_id = mlflow.create_experiment(replacement)
                self.experiment_name = replacement
            except Exception as e:
                logger.warning(f"Could not create experiment {replacement}: {e}")

        if experiment_id and experiment_id != "0":
            mlflow.set_experiment(experiment_id=experiment_id)
        else:
            mlflow.set_experiment("Default")
        logger.info(f"Tracking to {self.tracking_uri} under experiment '{self.experiment_name}'")

    def _safely(self, what: str, call: Callable, *args, **kwargs):
        try:
            return call(*args, **kwargs)
        except Exception as e:
            logger.warning(f"Failed to log {what}: {e}")
            return None

    def start_run(self, run_name: Optional[str] = None):
        return mlflow.start_run(run_name=run_name)

    def log_params(self, params: Dict[str, Any], prefix: str = ""):
        """Log (nested) parameters as flat dotted keys."""
        for key, value in self._flatten_dict(params, prefix).items():
            self._safely(f"param {key}", mlflow.log_param, key, value)

    def log_metrics(self, metrics: Dict[str, float], step: Optional[int] = None):
        for key, value in metrics.items():
            self._safely(f"metric {key}", mlflow.log_metric, key, value, step=step)

    def log_artifacts(self, artifact_path: str):
        self._safely("artifacts", mlflow.log_artifacts, artifact_path)

    def log_dict(self, dictionary: Dict[str, Any], artifact_file: str):
        self._safely(artifact_file, mlflow.log_dict, dictionary, artifact_file)

    def log_model(self, model, model_name: str):
        """Log a fitted scikit-learn estimator under ``model_name``."""
        self._safely(f"model {model_name}", mlflow.sklearn.log_model, model, model_name)

    def _flatten_dict(self, d: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
        flat: Dict[str, str] = {}
        for key, value in d.items():
            name = f"{prefix}.{key}" if prefix else key
            if isinstance(value, dict):
                flat.update(self._flatten_dict(value, name))
            else:
                flat[name] = str(value)
        return flat


def setup_experiment_tracking(config: Dict[str, Any]) -> Optional[ExperimentTracker]:
    """Build a tracker from ``config['experiment_tracking']``; ``None`` unless the backend is mlflow."""
    tracking_config = config.get('experiment_tracking', {})

    if tracking_config.get('backend', 'mlflow') != 'mlflow':
        logger.warning("No experiment tracking configured")
        return None
    return ExperimentTracker(tracking_config.get('mlflow', config.get('mlflow', {})))
