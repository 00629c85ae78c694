"""
Recipes and workflows.

A ``Recipe`` is the outcome column, an explicit predictor list and an ordered
list of named transformers. A ``Workflow`` pairs a recipe with a
``ModelSpec``; fitting it preps the recipe on the given rows only, bakes the
predictors and fits the model.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.base import TransformerMixin, clone

from .exceptions import SchemaError, PipelineError
from .grid import Parameter, finalize
from .metrics import CLASSIFICATION
from .models import ModelSpec, FittedModel, fit_model, ModelFamily
from .preprocessing import DummyEncoder, OrdinalScoreEncoder, ZeroVarianceFilter, DataScaler

logger = logging.getLogger(__name__)


@dataclass
class Recipe:
    """Outcome, predictor columns and preprocessing steps."""
    outcome: str
    predictors: List[str]
    steps: List[Tuple[str, TransformerMixin]] = field(default_factory=list)

    @classmethod
    def from_data(cls, data: pd.DataFrame, outcome: str,
                  exclude: Optional[Sequence[str]] = None) -> 'Recipe':
        """Use every column except the outcome and ``exclude`` as a predictor."""
        if outcome not in data.columns:
            raise SchemaError(f"Outcome column '{outcome}' not found", columns=[outcome])
        exclude = set(exclude or [])
        missing = sorted(exclude - set(data.columns))
        if missing:
            raise SchemaError(f"Excluded columns not found: {missing}", columns=missing)
        predictors = [c for c in data.columns if c != outcome and c not in exclude]
        return cls(outcome=outcome, predictors=predictors)

    def add_step(self, name: str, transformer: TransformerMixin) -> 'Recipe':
        if any(existing == name for existing, _ in self.steps):
            raise ValueError(f"Recipe already has a step named '{name}'")
        self.steps.append((name, transformer))
        return self

    def check_columns(self, data: pd.DataFrame):
        needed = [self.outcome] + self.predictors
        missing = [c for c in needed if c not in data.columns]
        if missing:
            raise SchemaError(f"Columns required by the recipe are missing: {missing}", columns=missing)

    def prep(self, data: pd.DataFrame) -> 'PreparedRecipe':
        """Fit every step, in order, on ``data``."""
        self.check_columns(data)
        X = data[self.predictors]
        fitted_steps = []
        for name, transformer in self.steps:
            step = clone(transformer)
            X = step.fit(X).transform(X)
            fitted_steps.append((name, step))
        return PreparedRecipe(recipe=self, steps=fitted_steps, columns=list(X.columns))


@dataclass
class PreparedRecipe:
    recipe: Recipe
    steps: List[Tuple[str, TransformerMixin]]
    columns: List[str]

    def bake(self, data: pd.DataFrame) -> pd.DataFrame:
        """Apply the fitted steps to new rows and return the predictor frame."""
        missing = [c for c in self.recipe.predictors if c not in data.columns]
        if missing:
            raise SchemaError(f"Columns required by the recipe are missing: {missing}", columns=missing)
        X = data[self.recipe.predictors]
        for _, step in self.steps:
            X = step.transform(X)
        return X[self.columns]

    def outcome(self, data: pd.DataFrame) -> np.ndarray:
        y = data[self.recipe.outcome]
        if isinstance(y.dtype, pd.CategoricalDtype):
            return np.asarray(y.astype(object))
        return y.to_numpy()


def create_recipe(data: pd.DataFrame, outcome: str, config: Optional[Dict] = None,
                  exclude: Optional[Sequence[str]] = None) -> Recipe:
    """
    Create the preprocessing recipe from configuration.

    Ordinal symptoms become integer scores, nominal columns become indicators,
    constant columns are removed and, if ``normalize`` is set, numeric
    predictors are standardized.
    """
    config = config or {}
    recipe = Recipe.from_data(data, outcome, exclude=exclude)
    if config.get('ordinal_scores', True):
        recipe.add_step('ordinalscore', OrdinalScoreEncoder())
    recipe.add_step('dummy', DummyEncoder())
    recipe.add_step('zv', ZeroVarianceFilter())
    if config.get('normalize', False):
        recipe.add_step('normalize', DataScaler(method=config.get('scaling_method', 'standard')))
    return recipe


@dataclass
class Workflow:
    """Recipe plus model specification, with optional bound parameter values."""
    recipe: Recipe
    model: ModelSpec
    bound: Dict[str, Any] = field(default_factory=dict)
    name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or self.model.family.value

    @property
    def mode(self) -> str:
        return self.model.mode

    def unbound_parameters(self) -> List[str]:
        return [p for p in self.model.tune if p not in self.bound]

    def tunable_parameters(self, training: Optional[pd.DataFrame] = None) -> List[Parameter]:
        """
        Domains of the parameters still to be tuned.

        With ``training`` data the recipe is prepped on it and data-dependent
        ranges are resolved against the resulting predictor columns.
        """
        params = [p for p in self.model.parameters() if p.name not in self.bound]
        if training is not None and any(p.data_dependent for p in params):
            predictors = self.recipe.prep(training).bake(training)
            params = finalize(params, predictors)
        return params

    def finalize(self, params: Mapping[str, Any]) -> 'Workflow':
        """Return a copy with ``params`` bound."""
        unknown = [k for k in params if k not in self.model.tune]
        if unknown:
            raise PipelineError(f"Parameters {unknown} are not tunable in {self.label}")
        values = {k: (v.item() if hasattr(v, 'item') else v) for k, v in params.items()}
        return replace(self, bound={**self.bound, **values})

    def fit(self, data: pd.DataFrame, params: Optional[Mapping[str, Any]] = None) -> 'FittedWorkflow':
        """Prep the recipe and fit the model on ``data``."""
        values = {**self.bound, **dict(params or {})}
        missing = [p for p in self.model.tune if p not in values]
        if missing:
            raise PipelineError(f"Workflow {self.label} has unbound tunable parameters {missing}; "
                                f"finalize it or pass values")
        prepared = self.recipe.prep(data)
        X = prepared.bake(data)
        y = prepared.outcome(data)
        if self.mode == CLASSIFICATION and len(np.unique(y)) < 2:
            raise PipelineError(f"Outcome '{self.recipe.outcome}' has a single class in the fitting data")
        model = fit_model(self.model, X, y, {k: values[k] for k in self.model.tune})
        return FittedWorkflow(workflow=self, prepared=prepared, model=model)


@dataclass
class FittedWorkflow:
    workflow: Workflow
    prepared: PreparedRecipe
    model: FittedModel

    @property
    def positive_class(self):
        return self.model.positive_class

    def outcome(self, data: pd.DataFrame) -> np.ndarray:
        return self.prepared.outcome(data)

    def predict(self, data: pd.DataFrame) -> np.ndarray:
        return self.model.predict(self.prepared.bake(data))

    def predict_proba(self, data: pd.DataFrame) -> np.ndarray:
        return self.model.predict_proba(self.prepared.bake(data))

    def augment(self, data: pd.DataFrame) -> pd.DataFrame:
        """
        Predictions alongside the truth, indexed like ``data``.

        Regression adds ``.pred`` and ``.resid`` (truth - prediction);
        classification adds ``.pred_class`` and ``.pred_prob`` (positive class).
        """
        truth = self.outcome(data)
        out = pd.DataFrame({'truth': truth}, index=data.index)
        if self.workflow.mode == CLASSIFICATION:
            out['.pred_class'] = self.predict(data)
            out['.pred_prob'] = self.predict_proba(data)
        else:
            out['.pred'] = self.predict(data)
            out['.resid'] = out['truth'].astype(float) - out['.pred']
        return out


def make_workflow(data: pd.DataFrame, outcome: str, family: str, mode: str,
                  config: Optional[Dict] = None, seed: Optional[int] = None,
                  name: Optional[str] = None) -> Workflow:
    """
    Build a workflow for one model family from its configuration block.

    Config keys: ``tune`` (list of parameter names), ``fixed`` (values),
    ``param_ranges`` and ``recipe`` (see ``create_recipe``). Regularized
    linear models are normalized unless the recipe block says otherwise.
    """
    config = dict(config or {})
    family = ModelFamily(family)
    recipe_cfg = dict(config.get('recipe', {}))
    recipe_cfg.setdefault('normalize', family == ModelFamily.REGULARIZED_LINEAR)
    recipe = create_recipe(data, outcome, recipe_cfg, exclude=config.get('exclude'))
    spec = ModelSpec(
        family=family,
        mode=mode,
        fixed=dict(config.get('fixed', {})),
        tune=tuple(config.get('tune', ())),
        param_ranges={k: tuple(v) for k, v in config.get('param_ranges', {}).items()},
        seed=seed,
    )
    return Workflow(recipe=recipe, model=spec, name=name)
