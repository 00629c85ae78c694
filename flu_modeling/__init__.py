"""
Flu Symptom Modeling

Data preparation and cross-validated model comparison for influenza-like
illness symptom data: body temperature (regression) and nausea
(classification) modeled with null, linear, LASSO, decision tree and
random forest families.
"""

__version__ = "1.0.0"

from .data_generation import SymptomDataGenerator
from .pipeline import (
    DataCleaner,
    SymptomDataValidator,
    initial_split,
    vfold_cv,
    tune_grid,
    last_fit,
    ModelComparison,
)
from .utils import (
    ExperimentTracker,
    ModelEvaluator,
    ModelComparator,
)

__all__ = [
    'SymptomDataGenerator',
    'DataCleaner',
    'SymptomDataValidator',
    'initial_split',
    'vfold_cv',
    'tune_grid',
    'last_fit',
    'ModelComparison',
    'ExperimentTracker',
    'ModelEvaluator',
    'ModelComparator',
]
