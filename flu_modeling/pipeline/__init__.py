"""Data preparation, resampling, tuning and model comparison."""

from .exceptions import (
    PipelineError,
    SchemaError,
    PartitionError,
    GridError,
    UnresolvedParameterError,
    LeakageError,
    SelectionError,
    DuplicateKeyError,
)
from .preprocessing import (
    DataCleaner,
    SymptomDataValidator,
    merge_sources,
    DummyEncoder,
    OrdinalScoreEncoder,
    ZeroVarianceFilter,
    DataScaler,
)
from .splitting import DataSplit, ResampleSet, initial_split, vfold_cv
from .grid import finalize, expand_grid, grid_regular, grid_latin_hypercube, build_grid
from .metrics import MetricSet
from .models import ModelFamily, ModelSpec, fit_model, variable_importance
from .workflow import Recipe, Workflow, create_recipe, make_workflow
from .tuning import CancellationToken, TuneControl, TuneResults, tune_grid, last_fit
from .comparison import ModelComparison, ComparisonResult

__all__ = [
    'PipelineError',
    'SchemaError',
    'PartitionError',
    'GridError',
    'UnresolvedParameterError',
    'LeakageError',
    'SelectionError',
    'DuplicateKeyError',
    'DataCleaner',
    'SymptomDataValidator',
    'merge_sources',
    'DummyEncoder',
    'OrdinalScoreEncoder',
    'ZeroVarianceFilter',
    'DataScaler',
    'DataSplit',
    'ResampleSet',
    'initial_split',
    'vfold_cv',
    'finalize',
    'expand_grid',
    'grid_regular',
    'grid_latin_hypercube',
    'build_grid',
    'MetricSet',
    'ModelFamily',
    'ModelSpec',
    'fit_model',
    'variable_importance',
    'Recipe',
    'Workflow',
    'create_recipe',
    'make_workflow',
    'CancellationToken',
    'TuneControl',
    'TuneResults',
    'tune_grid',
    'last_fit',
    'ModelComparison',
    'ComparisonResult',
]
