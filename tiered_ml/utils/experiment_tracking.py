"""
Experiment tracking utilities using MLflow.
"""

import logging
import time
from typing import Any, Dict, Optional

import mlflow

logger = logging.getLogger(__name__)


class ExperimentTracker:
    """MLflow wrapper used by the harness; every call is best-effort."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.tracking_uri = config.get("tracking_uri", "file:./mlruns")
        self.experiment_name = config.get("experiment_name", "tiered_ml")

        mlflow.set_tracking_uri(self.tracking_uri)
        try:
            experiment_id = mlflow.create_experiment(self.experiment_name)
        except Exception:
            experiment = mlflow.get_experiment_by_name(self.experiment_name)
            if experiment is not None and experiment.lifecycle_stage != "deleted":
                experiment_id = experiment.experiment_id
            else:
                # deleted experiments keep their name reserved
                self.experiment_name = f"{self.experiment_name}_{int(time.time())}"
                experiment_id = mlflow.create_experiment(self.experiment_name)
        mlflow.set_experiment(experiment_id=experiment_id)

    def start_run(self, run_name: Optional[str] = None, nested: bool = False):
        return mlflow.start_run(run_name=run_name, nested=nested)

    def log_params(self, params: Dict[str, Any], prefix: str = ""):
        for key, value in self._flatten_dict(params, prefix).items():
            try:
                mlflow.log_param(key, value)
            except Exception as e:
                logger.warning(f"Failed to log param {key}: {e}")

    def log_metrics(self, metrics: Dict[str, float], step: Optional[int] = None):
        for key, value in metrics.items():
            try:
                mlflow.log_metric(key, value, step=step)
            except Exception as e:
                logger.warning(f"Failed to log metric {key}: {e}")

    def log_cell(self, variant: str, algorithm: str, tier: str, metrics: Dict[str, Any]):
        """Log one comparison cell's metrics under ``variant.algorithm.tier.metric`` keys."""
        numeric = {
            f"{variant}.{algorithm}.{tier}.{name}": float(value)
            for name, value in metrics.items()
            if isinstance(value, (int, float)) and value == value
        }
        self.log_metrics(numeric)

    def log_artifacts(self, artifact_path: str):
        try:
            mlflow.log_artifacts(artifact_path)
        except Exception as e:
            logger.warning(f"Failed to log artifacts: {e}")

    def log_dict(self, dictionary: Dict[str, Any], artifact_file: str):
        try:
            mlflow.log_dict(dictionary, artifact_file)
            logger.info(f"Dictionary logged as {artifact_file}")
        except Exception as e:
            logger.warning(f"Failed to log dictionary to MLflow: {e}")

    def _flatten_dict(self, d: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
        """Flatten nested dictionary for parameter logging."""
        items = []
        for key, value in d.items():
            new_key = f"{prefix}.{key}" if prefix else key
            if isinstance(value, dict):
                items.extend(self._flatten_dict(value, new_key).items())
            else:
                items.append((new_key, str(value)))
        return dict(items)


def setup_experiment_tracking(config: Dict[str, Any]) -> Optional[ExperimentTracker]:
    """Tracker from the ``experiment_tracking`` config section, or None when disabled."""
    tracking_config = config.get("experiment_tracking", {})
    backend = tracking_config.get("backend", "none")
    if backend == "mlflow":
        return ExperimentTracker(tracking_config.get("mlflow", {}))
    if backend not in ("none", None):
        logger.warning(f"Unknown experiment tracking backend '{backend}', tracking disabled")
    return None
