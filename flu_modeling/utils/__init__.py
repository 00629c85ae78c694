"""Utility modules for the modeling pipeline."""

from .experiment_tracking import ExperimentTracker
from .model_utils import ModelEvaluator, ModelComparator

__all__ = [
    'ExperimentTracker',
    'ModelEvaluator',
    'ModelComparator',
]
