"""
Experiment tracking utilities using MLflow.
"""

import time
from contextlib import nullcontext
import mlflow
import mlflow.sklearn
import logging
from typing import Dict, Any, Optional, Union

logger = logging.getLogger(__name__)


class ExperimentTracker:
    """MLflow experiment tracking wrapper."""

    def __init__(self, config: Dict[str, Any]):
        """Initialize experiment tracker from the ``mlflow`` config section."""
        self.config = config
        self.enabled = config.get('enabled', True)
        self.tracking_uri = config.get('tracking_uri', 'file:./mlruns')
        self.experiment_name = config.get('experiment_name', 'flu_symptom_models')
        if not self.enabled:
            logger.info("MLflow tracking disabled")
            return

        mlflow.set_tracking_uri(self.tracking_uri)

        # Create or get experiment, handling deleted experiments
        try:
            experiment_id = mlflow.create_experiment(self.experiment_name)
        except Exception:
            experiment = mlflow.get_experiment_by_name(self.experiment_name)
            if experiment and experiment.lifecycle_stage != "deleted":
                experiment_id = experiment.experiment_id
            else:
                new_name = f"{self.experiment_name}_{int(time.time())}"
                try:
                    experiment_id = mlflow.create_experiment(new_name)
                    self.experiment_name = new_name
                except Exception:
                    experiment_id = "0"

        if experiment_id and experiment_id != "0":
            mlflow.set_experiment(experiment_id=experiment_id)
        else:
            mlflow.set_experiment("Default")

    def start_run(self, run_name: Optional[str] = None, nested: bool = False):
        """Start MLflow run (a no-op context when tracking is disabled)."""
        if not self.enabled:
            return nullcontext()
        return mlflow.start_run(run_name=run_name, nested=nested)

    def log_params(self, params: Dict[str, Any], prefix: str = ""):
        """Log parameters to MLflow."""
        if not self.enabled:
            return
        flat_params = self._flatten_dict(params, prefix)
        for key, value in flat_params.items():
            try:
                mlflow.log_param(key, value)
            except Exception as e:
                logger.warning(f"Failed to log param {key}: {e}")

    def log_metrics(self, metrics: Dict[str, float], step: Optional[int] = None, prefix: str = ""):
        """Log metrics to MLflow, skipping undefined values."""
        if not self.enabled:
            return
        for key, value in metrics.items():
            if value is None or value != value:
                continue
            name = f"{prefix}.{key}" if prefix else key
            try:
                mlflow.log_metric(name, float(value), step=step)
            except Exception as e:
                logger.warning(f"Failed to log metric {name}: {e}")

    def log_model_summary(self, outcome: str, summary_rows: list):
        """Log the cross-validated and held-out metrics of every model family."""
        for row in summary_rows:
            prefix = f"{outcome}.{row['model']}.{row['metric']}"
            self.log_metrics({
                'cv_mean': row.get('mean'),
                'cv_std_err': row.get('std_err'),
                'n_failed': row.get('n_failed'),
                'family_n_failed': row.get('family_n_failed'),
                'test': row.get('test_estimate'),
            }, prefix=prefix)

    def log_artifacts(self, artifact_path: str):
        """Log artifacts to MLflow."""
        if not self.enabled:
            return
        try:
            mlflow.log_artifacts(artifact_path)
        except Exception as e:
            logger.warning(f"Failed to log artifacts: {e}")

    def log_dict(self, dictionary: Union[Dict[str, Any], Any], artifact_file: str):
        """Log dictionary as YAML artifact to MLflow."""
        if not self.enabled:
            return
        try:
            mlflow.log_dict(dictionary, artifact_file)
            logger.info(f"Dictionary logged as {artifact_file}")
        except Exception as e:
            logger.warning(f"Failed to log dictionary to MLflow: {e}")

    def log_model(self, model, model_name: str, **kwargs):
        """Log a fitted scikit-learn estimator to MLflow."""
        if not self.enabled:
            return
        try:
            mlflow.sklearn.log_model(model, artifact_path=model_name, **kwargs)
        except Exception as e:
            logger.warning(f"Failed to log model {model_name}: {e}")

    def _flatten_dict(self, d: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
        """Flatten nested dictionary for parameter logging."""
        items = []

        for key, value in d.items():
            new_key = f"{prefix}.{key}" if prefix else key

            if isinstance(value, dict):
                items.extend(self._flatten_dict(value, new_key).items())
            else:
                # Convert to string for MLflow
                items.append((new_key, str(value)))

        return dict(items)
