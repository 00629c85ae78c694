"""
Performance metrics used for tuning and final evaluation.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Union

import numpy as np
from sklearn.metrics import (
    mean_squared_error, mean_absolute_error, roc_auc_score,
    accuracy_score, log_loss,
)

logger = logging.getLogger(__name__)

REGRESSION = 'regression'
CLASSIFICATION = 'classification'


def _rmse(y_true, y_pred, y_prob=None) -> float:
    return float(np.sqrt(mean_squared_error(y_true, y_pred)))


def _mae(y_true, y_pred, y_prob=None) -> float:
    return float(mean_absolute_error(y_true, y_pred))


def _rsq(y_true, y_pred, y_prob=None) -> float:
    """Squared correlation between truth and prediction."""
    y_true = np.asarray(y_true, dtype=float)
    y_pred = np.asarray(y_pred, dtype=float)
    if np.std(y_true) == 0 or np.std(y_pred) == 0:
        return float('nan')
    return float(np.corrcoef(y_true, y_pred)[0, 1] ** 2)


def _roc_auc(y_true, y_pred, y_prob) -> float:
    return float(roc_auc_score(y_true, y_prob))


def _accuracy(y_true, y_pred, y_prob=None) -> float:
    return float(accuracy_score(y_true, y_pred))


def _mn_log_loss(y_true, y_pred, y_prob) -> float:
    return float(log_loss(y_true, np.clip(y_prob, 1e-15, 1 - 1e-15), labels=[0, 1]))


@dataclass(frozen=True)
class Metric:
    """A named performance metric and its optimisation direction."""
    name: str
    mode: str
    direction: str  # 'minimize' or 'maximize'
    fn: Callable
    needs_probability: bool = False

    @property
    def larger_is_better(self) -> bool:
        return self.direction == 'maximize'


METRICS: Dict[str, Metric] = {
    'rmse': Metric('rmse', REGRESSION, 'minimize', _rmse),
    'mae': Metric('mae', REGRESSION, 'minimize', _mae),
    'rsq': Metric('rsq', REGRESSION, 'maximize', _rsq),
    'roc_auc': Metric('roc_auc', CLASSIFICATION, 'maximize', _roc_auc, needs_probability=True),
    'accuracy': Metric('accuracy', CLASSIFICATION, 'maximize', _accuracy),
    'mn_log_loss': Metric('mn_log_loss', CLASSIFICATION, 'minimize', _mn_log_loss, needs_probability=True),
}

DEFAULT_METRICS = {
    REGRESSION: ['rmse', 'mae', 'rsq'],
    CLASSIFICATION: ['roc_auc', 'accuracy', 'mn_log_loss'],
}


class MetricSet:
    """Ordered collection of metrics; the first one is the primary metric."""

    def __init__(self, names: Sequence[str]):
        if not names:
            raise ValueError("At least one metric is required")
        unknown = [n for n in names if n not in METRICS]
        if unknown:
            raise ValueError(f"Unknown metrics: {unknown}. Available: {sorted(METRICS)}")
        modes = {METRICS[n].mode for n in names}
        if len(modes) > 1:
            raise ValueError(f"Cannot mix regression and classification metrics: {list(names)}")
        self.metrics: List[Metric] = [METRICS[n] for n in names]
        self.mode = modes.pop()

    @classmethod
    def default(cls, mode: str) -> 'MetricSet':
        return cls(DEFAULT_METRICS[mode])

    @property
    def names(self) -> List[str]:
        return [m.name for m in self.metrics]

    @property
    def primary(self) -> Metric:
        return self.metrics[0]

    def get(self, name: Optional[str] = None) -> Metric:
        if name is None:
            return self.primary
        for metric in self.metrics:
            if metric.name == name:
                return metric
        raise ValueError(f"Metric '{name}' is not part of this metric set {self.names}")

    def compute(self,
                y_true: np.ndarray,
                y_pred: np.ndarray,
                y_prob: Optional[np.ndarray] = None,
                positive_class=None) -> Dict[str, float]:
        """
        Compute every metric.

        A metric that cannot be computed on this data (e.g. ROC AUC with a
        single class present) is reported as NaN.

        Args:
            y_true: Observed outcome
            y_pred: Predicted value or class
            y_prob: Predicted probability of ``positive_class`` (classification)
            positive_class: Event level for probability metrics

        Returns:
            Metric name -> value
        """
        y_true = np.asarray(y_true)
        y_pred = np.asarray(y_pred)
        results = {}
        for metric in self.metrics:
            if metric.needs_probability:
                if y_prob is None:
                    raise ValueError(f"Metric '{metric.name}' needs predicted probabilities")
                truth = (y_true == positive_class).astype(int)
                args = (truth, y_pred, np.asarray(y_prob, dtype=float))
            else:
                args = (y_true, y_pred, y_prob)
            try:
                results[metric.name] = metric.fn(*args)
            except ValueError as e:
                logger.warning(f"Metric {metric.name} could not be computed: {e}")
                results[metric.name] = float('nan')
        return results

    def __iter__(self):
        return iter(self.metrics)

    def __len__(self) -> int:
        return len(self.metrics)

    def __repr__(self) -> str:
        return f"MetricSet({self.names})"


def as_metric_set(metrics: Union[None, str, Sequence[str], MetricSet], mode: str) -> MetricSet:
    """Coerce a metric specification into a ``MetricSet`` for ``mode``."""
    if metrics is None:
        metric_set = MetricSet.default(mode)
    elif isinstance(metrics, MetricSet):
        metric_set = metrics
    elif isinstance(metrics, str):
        metric_set = MetricSet([metrics])
    else:
        metric_set = MetricSet(list(metrics))
    if metric_set.mode != mode:
        raise ValueError(f"Metrics {metric_set.names} are for {metric_set.mode}, model mode is {mode}")
    return metric_set
