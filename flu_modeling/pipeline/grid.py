"""
Hyperparameter domains and grid construction.

A ``Parameter`` carries two ranges: a hard validity domain (natural scale)
and a default search range (on the transformed scale, e.g. log10). A search
range whose upper end depends on the training data (``mtry``) is unknown
until ``finalize`` resolves it; generating or validating a grid before that
is rejected.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .exceptions import GridError, UnresolvedParameterError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Parameter:
    """Domain of one tunable parameter."""
    name: str
    kind: str  # 'integer' or 'double'
    range: Tuple[Optional[float], Optional[float]]
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    transform: Optional[str] = None
    simpler: str = 'lower'
    data_dependent: bool = False

    @property
    def is_resolved(self) -> bool:
        return self.range[0] is not None and self.range[1] is not None

    def to_natural(self, values: np.ndarray) -> np.ndarray:
        """Map transformed-scale values to the natural scale."""
        values = np.asarray(values, dtype=float)
        if self.transform == 'log10':
            values = np.power(10.0, values)
        if self.kind == 'integer':
            values = np.round(values).astype(int)
        return values

    def sample_unit(self, unit: np.ndarray) -> np.ndarray:
        """Map points of [0, 1] onto the search range."""
        self._require_resolved()
        lower, upper = self.range
        if self.kind == 'integer' and self.transform is None:
            # widen by half a step so both end points are equally likely
            lower, upper = lower - 0.5 + 1e-9, upper + 0.5 - 1e-9
        return self.to_natural(lower + np.asarray(unit) * (upper - lower))

    def levels(self, n: int) -> np.ndarray:
        """``n`` evenly spaced values over the search range."""
        self._require_resolved()
        values = self.to_natural(np.linspace(self.range[0], self.range[1], n))
        if self.kind == 'integer':
            values = np.unique(values)
        return values

    def check(self, value: Any):
        """Raise ``GridError`` if ``value`` lies outside the validity domain."""
        self._require_resolved()
        if pd.isna(value):
            raise GridError(f"Parameter '{self.name}' has a missing value")
        if self.kind == 'integer' and float(value) != int(float(value)):
            raise GridError(f"Parameter '{self.name}' must be an integer, got {value!r}")
        if self.minimum is not None and value < self.minimum:
            raise GridError(f"Parameter '{self.name}'={value!r} is below its minimum {self.minimum}")
        if self.maximum is not None and value > self.maximum:
            raise GridError(f"Parameter '{self.name}'={value!r} is above its maximum {self.maximum}")

    def _require_resolved(self):
        if not self.is_resolved:
            raise UnresolvedParameterError(
                f"Parameter '{self.name}' has a data-dependent range; "
                f"call finalize() with the training predictors first"
            )


# ---------- Parameter domains ----------

def penalty(range: Tuple[float, float] = (-10.0, 0.0)) -> Parameter:
    """Amount of L1 regularization (log10 scale)."""
    return Parameter('penalty', 'double', range, minimum=0.0, transform='log10', simpler='higher')


def cost_complexity(range: Tuple[float, float] = (-10.0, -1.0)) -> Parameter:
    """Cost-complexity pruning parameter (log10 scale)."""
    return Parameter('cost_complexity', 'double', range, minimum=0.0, transform='log10', simpler='higher')


def tree_depth(range: Tuple[int, int] = (1, 15)) -> Parameter:
    return Parameter('tree_depth', 'integer', range, minimum=1, simpler='lower')


def min_n(range: Tuple[int, int] = (2, 40)) -> Parameter:
    """Minimum rows in a node for it to be split."""
    return Parameter('min_n', 'integer', range, minimum=2, simpler='higher')


def mtry(range: Tuple[int, Optional[int]] = (1, None)) -> Parameter:
    """Predictors sampled at each split; the upper bound is the predictor count."""
    return Parameter('mtry', 'integer', range, minimum=1, maximum=range[1],
                     simpler='lower', data_dependent=True)


def trees(range: Tuple[int, int] = (1, 2000)) -> Parameter:
    return Parameter('trees', 'integer', range, minimum=1, simpler='lower')


PARAMETER_FACTORIES = {
    'penalty': penalty,
    'cost_complexity': cost_complexity,
    'tree_depth': tree_depth,
    'min_n': min_n,
    'mtry': mtry,
    'trees': trees,
}


def finalize(parameters: Sequence[Parameter], predictors: pd.DataFrame) -> List[Parameter]:
    """
    Resolve data-dependent ranges against the training predictors.

    Args:
        parameters: Parameter domains
        predictors: Predictor columns of the training data (after preprocessing)

    Returns:
        New list of parameters with every range known
    """
    n_predictors = predictors.shape[1]
    if n_predictors < 1:
        raise GridError("Cannot finalize parameters without predictor columns")
    resolved = []
    for param in parameters:
        if param.data_dependent and param.range[1] is None:
            upper = n_predictors
            lower = min(param.range[0], upper)
            param = replace(param, range=(lower, upper), maximum=upper)
            logger.info(f"Finalized '{param.name}' range to [{lower}, {upper}]")
        resolved.append(param)
    return resolved


def _by_name(parameters: Sequence[Parameter]) -> Dict[str, Parameter]:
    return {p.name: p for p in parameters}


def validate_grid(grid: pd.DataFrame, parameters: Sequence[Parameter]) -> pd.DataFrame:
    """Check that ``grid`` has exactly the tunable columns and valid values."""
    params = _by_name(parameters)
    missing = [name for name in params if name not in grid.columns]
    extra = [col for col in grid.columns if col not in params]
    if missing or extra:
        raise GridError(f"Grid columns {list(grid.columns)} do not match tunable parameters "
                        f"{list(params)} (missing={missing}, unexpected={extra})")
    for name, param in params.items():
        for value in grid[name].tolist():
            param.check(value)
    if grid.duplicated().any():
        logger.warning("Grid contains duplicate configurations; keeping the first of each")
        grid = grid.drop_duplicates()
    return grid.reset_index(drop=True)


def expand_grid(values: Mapping[str, Sequence[Any]],
                parameters: Optional[Sequence[Parameter]] = None) -> pd.DataFrame:
    """
    Cartesian product of candidate values.

    Args:
        values: Parameter name -> candidate values
        parameters: Domains used to validate the candidates

    Returns:
        Grid with one row per configuration
    """
    names = list(values)
    rows = list(itertools.product(*[list(values[name]) for name in names]))
    grid = pd.DataFrame(rows, columns=names)
    if parameters is not None:
        grid = validate_grid(grid, parameters)
    return grid


def grid_regular(parameters: Sequence[Parameter],
                 levels: Union[int, Mapping[str, int]] = 3) -> pd.DataFrame:
    """Evenly spaced levels per parameter, crossed."""
    if not parameters:
        return pd.DataFrame(index=[0])
    values = {}
    for param in parameters:
        n = levels.get(param.name, 3) if isinstance(levels, Mapping) else levels
        values[param.name] = param.levels(n).tolist()
    return expand_grid(values, parameters)


def grid_latin_hypercube(parameters: Sequence[Parameter],
                         size: int = 10,
                         seed: Optional[int] = None) -> pd.DataFrame:
    """Space-filling design: each parameter's range is cut into ``size`` strata
    and every stratum is sampled exactly once."""
    if not parameters:
        return pd.DataFrame(index=[0])
    if size < 1:
        raise GridError(f"Grid size must be positive, got {size}")
    rng = np.random.RandomState(seed)
    values = {}
    for param in parameters:
        unit = (rng.permutation(size) + rng.uniform(size=size)) / size
        values[param.name] = param.sample_unit(unit)
    grid = pd.DataFrame(values)
    return validate_grid(grid, parameters)


def _expand_values(spec: Any) -> List[Any]:
    if isinstance(spec, Mapping):
        if 'log10_from' in spec:
            exps = np.linspace(spec['log10_from'], spec['log10_to'], spec.get('length', 10))
            return np.power(10.0, exps).tolist()
        if 'from' in spec:
            return np.linspace(spec['from'], spec['to'], spec.get('length', 10)).tolist()
        raise GridError(f"Unrecognized value specification: {spec}")
    return list(spec)


def build_grid(parameters: Sequence[Parameter],
               grid_config: Optional[Mapping[str, Any]] = None,
               seed: Optional[int] = None) -> pd.DataFrame:
    """
    Build a grid from a configuration block.

    Supported forms::

        {'type': 'regular', 'levels': 5}
        {'type': 'latin_hypercube', 'size': 25}
        {'type': 'values', 'values': {'penalty': {'log10_from': -3, 'log10_to': 0, 'length': 30}}}

    Args:
        parameters: Finalized parameter domains
        grid_config: Grid specification
        seed: Seed for random designs

    Returns:
        Validated grid
    """
    grid_config = dict(grid_config or {})
    grid_type = grid_config.get('type', 'latin_hypercube')
    if grid_type == 'regular':
        grid = grid_regular(parameters, grid_config.get('levels', 3))
    elif grid_type == 'latin_hypercube':
        grid = grid_latin_hypercube(parameters, grid_config.get('size', 10), seed=seed)
    elif grid_type == 'values':
        values = {name: _expand_values(spec) for name, spec in grid_config.get('values', {}).items()}
        grid = expand_grid(values, parameters)
    else:
        raise GridError(f"Unknown grid type: {grid_type}")
    logger.info(f"Built {grid_type} grid with {len(grid)} configurations over {[p.name for p in parameters]}")
    return grid
