"""
Model utilities for held-out evaluation and model comparison.
"""

import numpy as np
import pandas as pd
from typing import Dict, Optional
from sklearn.metrics import (
    mean_squared_error, mean_absolute_error, median_absolute_error,
    roc_auc_score, average_precision_score, f1_score,
    precision_score, recall_score, accuracy_score, confusion_matrix,
)
import logging

logger = logging.getLogger(__name__)

# Metrics where a smaller value is better
LOWER_IS_BETTER = {'rmse', 'mae', 'median_ae', 'max_abs_residual', 'mn_log_loss', 'brier_score'}


class ModelEvaluator:
    """Detailed evaluation of final-fit predictions."""

    def regression_metrics(self, y_true: np.ndarray, y_pred: np.ndarray) -> Dict[str, float]:
        """
        Calculate regression metrics and residual summaries.

        Args:
            y_true: Observed values
            y_pred: Predicted values

        Returns:
            Dictionary of metrics
        """
        y_true = np.asarray(y_true, dtype=float)
        y_pred = np.asarray(y_pred, dtype=float)
        residuals = y_true - y_pred

        metrics = {}
        metrics['rmse'] = float(np.sqrt(mean_squared_error(y_true, y_pred)))
        metrics['mae'] = float(mean_absolute_error(y_true, y_pred))
        metrics['median_ae'] = float(median_absolute_error(y_true, y_pred))
        if np.std(y_true) > 0 and np.std(y_pred) > 0:
            metrics['rsq'] = float(np.corrcoef(y_true, y_pred)[0, 1] ** 2)
        else:
            metrics['rsq'] = float('nan')

        # Residual summaries
        metrics['mean_residual'] = float(residuals.mean())
        metrics['residual_sd'] = float(residuals.std(ddof=1)) if len(residuals) > 1 else float('nan')
        metrics['max_abs_residual'] = float(np.abs(residuals).max())
        return metrics

    def classification_metrics(self,
                               y_true: np.ndarray,
                               y_pred: np.ndarray,
                               y_proba: np.ndarray,
                               positive_class) -> Dict[str, float]:
        """
        Calculate classification metrics for one event level.

        Args:
            y_true: Observed class labels
            y_pred: Predicted class labels
            y_proba: Predicted probabilities of ``positive_class``
            positive_class: Event level

        Returns:
            Dictionary of metrics
        """
        truth = (np.asarray(y_true) == positive_class).astype(int)
        predicted = (np.asarray(y_pred) == positive_class).astype(int)
        y_proba = np.asarray(y_proba, dtype=float)

        metrics = {}
        metrics['accuracy'] = accuracy_score(truth, predicted)
        metrics['precision'] = precision_score(truth, predicted, zero_division=0)
        metrics['recall'] = recall_score(truth, predicted, zero_division=0)
        metrics['f1_score'] = f1_score(truth, predicted, zero_division=0)

        if len(np.unique(truth)) > 1:
            metrics['roc_auc'] = roc_auc_score(truth, y_proba)
            metrics['pr_auc'] = average_precision_score(truth, y_proba)
        else:
            logger.warning("Only one class present in y_true; ROC/PR AUC undefined")
            metrics['roc_auc'] = float('nan')
            metrics['pr_auc'] = float('nan')

        tn, fp, fn, tp = confusion_matrix(truth, predicted, labels=[0, 1]).ravel()
        metrics['true_negatives'] = int(tn)
        metrics['false_positives'] = int(fp)
        metrics['false_negatives'] = int(fn)
        metrics['true_positives'] = int(tp)
        metrics['specificity'] = tn / (tn + fp) if (tn + fp) > 0 else 0
        metrics['sensitivity'] = tp / (tp + fn) if (tp + fn) > 0 else 0
        metrics['brier_score'] = float(np.mean((y_proba - truth) ** 2))
        return {k: float(v) for k, v in metrics.items()}

    def evaluate_predictions(self, predictions: pd.DataFrame, positive_class=None) -> Dict[str, float]:
        """Evaluate a final-fit prediction frame (``truth`` plus ``.pred`` or ``.pred_class``/``.pred_prob``)."""
        if '.pred' in predictions.columns:
            return self.regression_metrics(predictions['truth'], predictions['.pred'])
        return self.classification_metrics(
            predictions['truth'], predictions['.pred_class'], predictions['.pred_prob'], positive_class
        )


class ModelComparator:
    """Compare held-out metrics of several models."""

    def __init__(self):
        """Initialize comparator."""
        self.results: Dict[str, Dict[str, float]] = {}

    def add_model(self, name: str, metrics: Dict[str, float]):
        """Add model results for comparison."""
        self.results[name] = dict(metrics)

    def compare_models(self, metric: Optional[str] = None) -> pd.DataFrame:
        """Create comparison table, best first when ``metric`` is given."""
        if not self.results:
            return pd.DataFrame()

        comparison_df = pd.DataFrame(self.results).T
        if metric is not None and metric in comparison_df.columns:
            comparison_df = comparison_df.sort_values(
                metric, ascending=metric in LOWER_IS_BETTER, na_position='last'
            )
        return comparison_df

    def get_best_model(self, metric: str) -> Optional[str]:
        """Get name of best performing model."""
        scores = {name: m[metric] for name, m in self.results.items()
                  if metric in m and not pd.isna(m[metric])}
        if not scores:
            return None
        if metric in LOWER_IS_BETTER:
            return min(scores, key=scores.get)
        return max(scores, key=scores.get)

