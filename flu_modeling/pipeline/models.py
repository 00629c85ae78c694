"""
Model families.

The set of families is closed: ``ModelFamily`` enumerates them and each has
one strategy that turns bound parameter values into a scikit-learn estimator.
Fitting and prediction go through ``fit_model`` / ``FittedModel`` for every
family, the null model included.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.base import BaseEstimator
from sklearn.dummy import DummyRegressor, DummyClassifier
from sklearn.linear_model import LinearRegression, LogisticRegression, Lasso
from sklearn.tree import DecisionTreeRegressor, DecisionTreeClassifier
from sklearn.ensemble import RandomForestRegressor, RandomForestClassifier

from .grid import Parameter, PARAMETER_FACTORIES
from .metrics import REGRESSION, CLASSIFICATION

logger = logging.getLogger(__name__)


class ModelFamily(str, Enum):
    BASELINE = 'null'
    LINEAR_REGRESSION = 'linear'
    REGULARIZED_LINEAR = 'lasso'
    DECISION_TREE = 'decision_tree'
    RANDOM_FOREST = 'random_forest'


def _root_impurity(y: np.ndarray, mode: str) -> float:
    """Impurity of the unsplit node: variance for regression, Gini otherwise."""
    if mode == REGRESSION:
        return float(np.var(np.asarray(y, dtype=float)))
    _, counts = np.unique(y, return_counts=True)
    p = counts / counts.sum()
    return float(1.0 - np.sum(p ** 2))


class FamilyStrategy:
    """Builds the estimator of one model family."""

    family: ModelFamily
    tunable: Tuple[str, ...] = ()
    defaults: Dict[str, Any] = {}

    def build(self, mode: str, params: Mapping[str, Any], X: pd.DataFrame, y: np.ndarray,
              seed: Optional[int] = None) -> BaseEstimator:
        raise NotImplementedError


class BaselineStrategy(FamilyStrategy):
    """Predicts the training mean, or the majority class with class-prior probabilities."""
    family = ModelFamily.BASELINE

    def build(self, mode, params, X, y, seed=None):
        if mode == REGRESSION:
            return DummyRegressor(strategy='mean')
        return DummyClassifier(strategy='prior')


class LinearStrategy(FamilyStrategy):
    family = ModelFamily.LINEAR_REGRESSION

    def build(self, mode, params, X, y, seed=None):
        if mode == REGRESSION:
            return LinearRegression()
        # unpenalized logistic regression
        return LogisticRegression(C=np.inf, max_iter=5000)


class RegularizedLinearStrategy(FamilyStrategy):
    """L1-penalized linear or logistic regression.

    ``penalty`` follows the glmnet convention (loss averaged over rows), which
    is sklearn's ``alpha`` for ``Lasso`` and ``1 / (n * penalty)`` as ``C``
    for logistic regression. A zero penalty falls back to the unpenalized fit.
    """
    family = ModelFamily.REGULARIZED_LINEAR
    tunable = ('penalty',)
    defaults = {'penalty': 0.01}

    def build(self, mode, params, X, y, seed=None):
        penalty = float(params.get('penalty', self.defaults['penalty']))
        if penalty == 0:
            return LinearStrategy().build(mode, params, X, y, seed)
        if mode == REGRESSION:
            return Lasso(alpha=penalty, max_iter=10000, random_state=seed)
        return LogisticRegression(penalty='l1', solver='liblinear', C=1.0 / (len(y) * penalty),
                                  max_iter=5000, random_state=seed)


class DecisionTreeStrategy(FamilyStrategy):
    """CART tree.

    ``cost_complexity`` is relative to the root node's impurity (as in rpart)
    and is rescaled to sklearn's absolute ``ccp_alpha``.
    """
    family = ModelFamily.DECISION_TREE
    tunable = ('cost_complexity', 'tree_depth', 'min_n')
    defaults = {'cost_complexity': 0.01, 'tree_depth': 30, 'min_n': 20}

    def build(self, mode, params, X, y, seed=None):
        merged = {**self.defaults, **params}
        ccp_alpha = float(merged['cost_complexity']) * _root_impurity(y, mode)
        kwargs = dict(
            max_depth=int(merged['tree_depth']),
            min_samples_split=int(merged['min_n']),
            ccp_alpha=ccp_alpha,
            random_state=seed,
        )
        if mode == REGRESSION:
            return DecisionTreeRegressor(**kwargs)
        return DecisionTreeClassifier(**kwargs)


class RandomForestStrategy(FamilyStrategy):
    """Random forest; ``mtry`` defaults to p/3 (regression) or sqrt(p) (classification)."""
    family = ModelFamily.RANDOM_FOREST
    tunable = ('mtry', 'min_n', 'trees')
    defaults = {'trees': 500}

    def build(self, mode, params, X, y, seed=None):
        n_predictors = X.shape[1]
        if 'mtry' in params:
            # fold-level filtering can leave fewer predictors than the finalized upper bound
            mtry = min(max(1, int(params['mtry'])), n_predictors)
        elif mode == REGRESSION:
            mtry = max(1, n_predictors // 3)
        else:
            mtry = max(1, int(np.floor(np.sqrt(n_predictors))))
        min_samples = int(params.get('min_n', 5 if mode == REGRESSION else 2))
        kwargs = dict(
            n_estimators=int(params.get('trees', self.defaults['trees'])),
            max_features=mtry,
            min_samples_split=min_samples,
            random_state=seed,
            n_jobs=1,
        )
        if mode == REGRESSION:
            return RandomForestRegressor(**kwargs)
        return RandomForestClassifier(**kwargs)


STRATEGIES: Dict[ModelFamily, FamilyStrategy] = {
    ModelFamily.BASELINE: BaselineStrategy(),
    ModelFamily.LINEAR_REGRESSION: LinearStrategy(),
    ModelFamily.REGULARIZED_LINEAR: RegularizedLinearStrategy(),
    ModelFamily.DECISION_TREE: DecisionTreeStrategy(),
    ModelFamily.RANDOM_FOREST: RandomForestStrategy(),
}


@dataclass
class ModelSpec:
    """Model family, mode, fixed engine values and the parameters left to tune."""
    family: ModelFamily
    mode: str = REGRESSION
    fixed: Dict[str, Any] = field(default_factory=dict)
    tune: Tuple[str, ...] = ()
    param_ranges: Dict[str, Tuple[Any, Any]] = field(default_factory=dict)
    seed: Optional[int] = None

    def __post_init__(self):
        self.family = ModelFamily(self.family)
        if self.mode not in (REGRESSION, CLASSIFICATION):
            raise ValueError(f"Unknown mode: {self.mode}")
        self.tune = tuple(self.tune)
        allowed = STRATEGIES[self.family].tunable
        bad = [name for name in list(self.tune) + list(self.fixed) if name not in allowed]
        if bad:
            raise ValueError(f"{self.family.value} model has no parameters {bad}; allowed: {list(allowed)}")
        both = set(self.tune) & set(self.fixed)
        if both:
            raise ValueError(f"Parameters {sorted(both)} are both fixed and tuned")

    @property
    def strategy(self) -> FamilyStrategy:
        return STRATEGIES[self.family]

    def parameters(self) -> List[Parameter]:
        """Domains of the tuned parameters, in declaration order."""
        params = []
        for name in self.tune:
            factory = PARAMETER_FACTORIES[name]
            if name in self.param_ranges:
                params.append(factory(range=tuple(self.param_ranges[name])))
            else:
                params.append(factory())
        return params


@dataclass
class FittedModel:
    """A fitted estimator together with the values it was fit with."""
    spec: ModelSpec
    params: Dict[str, Any]
    estimator: BaseEstimator
    feature_names: List[str]

    @property
    def classes(self) -> Optional[np.ndarray]:
        return getattr(self.estimator, 'classes_', None)

    @property
    def positive_class(self):
        classes = self.classes
        return None if classes is None else classes[-1]

    def predict(self, X: pd.DataFrame) -> np.ndarray:
        return self.estimator.predict(X[self.feature_names])

    def predict_proba(self, X: pd.DataFrame) -> np.ndarray:
        """Probability of the positive (last) class."""
        if self.spec.mode != CLASSIFICATION:
            raise ValueError("Probabilities are only available for classification models")
        return self.estimator.predict_proba(X[self.feature_names])[:, -1]


def fit_model(spec: ModelSpec, X: pd.DataFrame, y: np.ndarray,
              params: Optional[Mapping[str, Any]] = None) -> FittedModel:
    """
    Fit one model family on preprocessed predictors.

    Args:
        spec: Model specification
        X: Predictor frame (already baked by the recipe)
        y: Outcome values
        params: Values for the tuned parameters

    Returns:
        FittedModel
    """
    values = {**spec.fixed, **dict(params or {})}
    estimator = spec.strategy.build(spec.mode, values, X, y, seed=spec.seed)
    estimator.fit(X, y)
    return FittedModel(spec=spec, params=values, estimator=estimator, feature_names=list(X.columns))


def variable_importance(fitted: FittedModel) -> pd.DataFrame:
    """
    Model-based variable importance.

    Trees and forests use impurity importances, linear models the absolute
    coefficients. The null model has none.

    Returns:
        DataFrame with ``variable`` and ``importance`` sorted descending
    """
    estimator = fitted.estimator
    if hasattr(estimator, 'feature_importances_'):
        scores = np.asarray(estimator.feature_importances_)
    elif hasattr(estimator, 'coef_'):
        scores = np.abs(np.atleast_2d(estimator.coef_)).max(axis=0)
    else:
        return pd.DataFrame(columns=['variable', 'importance'])
    return (pd.DataFrame({'variable': fitted.feature_names, 'importance': scores})
            .sort_values('importance', ascending=False)
            .reset_index(drop=True))
