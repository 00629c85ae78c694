"""
Data cleaning, validation and recipe transformers for the symptom data.
"""

import pandas as pd
import numpy as np
import logging
import time
from typing import Dict, List, Optional, Sequence
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.preprocessing import StandardScaler, MinMaxScaler

from .exceptions import SchemaError, DuplicateKeyError

logger = logging.getLogger(__name__)

SEVERITY_LEVELS = ['None', 'Mild', 'Moderate', 'Severe']
YES_NO_LEVELS = ['No', 'Yes']

# Severity scores that duplicate a Yes/No column in the raw data
ORDINAL_SYMPTOMS = ['Weakness', 'CoughIntensity', 'Myalgia']
REDUNDANT_YN_COLUMNS = ['WeaknessYN', 'CoughYN', 'CoughYN2', 'MyalgiaYN']
RAW_DROP_PATTERNS = ['Score', 'Total', 'FluA', 'FluB', 'Dxname', 'Activity', 'Unique.Visit']


def _is_nominal(series: pd.Series) -> bool:
    if isinstance(series.dtype, pd.CategoricalDtype):
        return not series.dtype.ordered
    return (pd.api.types.is_object_dtype(series)
            or pd.api.types.is_bool_dtype(series)
            or pd.api.types.is_string_dtype(series))


def _is_ordinal(series: pd.Series) -> bool:
    return isinstance(series.dtype, pd.CategoricalDtype) and series.dtype.ordered


class DataCleaner:
    """Turn a raw observation table into a modeling-ready table.

    Steps, in order: required-column check, column drops (by name and by
    name pattern), ordered-categorical coercion, removal of rows with any
    missing value, and removal of nominal columns whose minority class has
    fewer than ``min_category_count`` rows. Running the cleaner on its own
    output is a no-op.
    """

    def __init__(self,
                 required_columns: Optional[Sequence[str]] = None,
                 drop_columns: Optional[Sequence[str]] = None,
                 drop_patterns: Optional[Sequence[str]] = None,
                 ordinal_columns: Optional[Dict[str, Sequence[str]]] = None,
                 min_category_count: int = 50,
                 protected_columns: Optional[Sequence[str]] = None):
        """
        Initialize the cleaner.

        Args:
            required_columns: Columns that must be present in the input
            drop_columns: Redundant columns removed by exact name
            drop_patterns: Substrings; any column containing one is removed
            ordinal_columns: Column -> ordered level list
            min_category_count: Minority-class threshold for nominal columns
            protected_columns: Columns never removed by the variance filter (outcomes)
        """
        self.required_columns = list(required_columns or [])
        self.drop_columns = list(drop_columns or [])
        self.drop_patterns = list(drop_patterns or [])
        self.ordinal_columns = dict(ordinal_columns or {})
        self.min_category_count = min_category_count
        self.protected_columns = list(protected_columns or [])
        self.dropped_sparse_columns_: List[str] = []

    @classmethod
    def from_config(cls, config: Dict) -> 'DataCleaner':
        """Build a cleaner from the ``cleaning`` and ``data`` config sections."""
        cleaning = config.get('cleaning', {})
        data_cfg = config.get('data', {})
        outcomes = [c for c in (data_cfg.get('continuous_outcome'),
                                data_cfg.get('categorical_outcome')) if c]
        levels = cleaning.get('ordinal_levels', SEVERITY_LEVELS)
        ordinal = {col: levels for col in cleaning.get('ordinal_columns', ORDINAL_SYMPTOMS)}
        return cls(
            required_columns=outcomes + list(cleaning.get('required_columns', [])),
            drop_columns=cleaning.get('drop_columns', REDUNDANT_YN_COLUMNS),
            drop_patterns=cleaning.get('drop_patterns', RAW_DROP_PATTERNS),
            ordinal_columns=ordinal,
            min_category_count=cleaning.get('min_category_count', 50),
            protected_columns=outcomes,
        )

    def check_schema(self, df: pd.DataFrame):
        """Fail fast when a required or ordinal column is missing."""
        needed = self.required_columns + list(self.ordinal_columns)
        missing = [col for col in needed if col not in df.columns]
        if missing:
            raise SchemaError(f"Required columns missing from input: {missing}", columns=missing)

    def clean(self, df: pd.DataFrame) -> pd.DataFrame:
        """Return the cleaned copy of ``df``."""
        start_time = time.time()
        logger.info(f"Cleaning table with shape {df.shape}")
        self.check_schema(df)

        to_drop = [col for col in df.columns
                   if col in self.drop_columns
                   or any(pattern.lower() in col.lower() for pattern in self.drop_patterns)]
        protected = set(self.required_columns) | set(self.ordinal_columns)
        clash = [col for col in to_drop if col in protected]
        if clash:
            raise SchemaError(f"Columns are both required and scheduled for removal: {clash}", columns=clash)
        cleaned = df.drop(columns=to_drop)
        if to_drop:
            logger.info(f"Dropped {len(to_drop)} redundant columns: {to_drop}")

        for col, levels in self.ordinal_columns.items():
            cleaned[col] = self._to_ordered(cleaned[col], col, levels)

        for col in cleaned.columns:
            if col not in self.ordinal_columns and _is_nominal(cleaned[col]):
                if not isinstance(cleaned[col].dtype, pd.CategoricalDtype):
                    cleaned[col] = cleaned[col].astype('category')

        n_before = len(cleaned)
        cleaned = cleaned.dropna().reset_index(drop=True)
        if len(cleaned) < n_before:
            logger.info(f"Removed {n_before - len(cleaned)} rows with missing values")

        sparse = self._sparse_nominal_columns(cleaned)
        self.dropped_sparse_columns_ = sparse
        if sparse:
            logger.info(f"Removed {len(sparse)} near-zero-variance columns "
                        f"(minority count < {self.min_category_count}): {sparse}")
            cleaned = cleaned.drop(columns=sparse)

        for col in cleaned.columns:
            if isinstance(cleaned[col].dtype, pd.CategoricalDtype) and not cleaned[col].dtype.ordered:
                cleaned[col] = cleaned[col].cat.remove_unused_categories()

        elapsed_time = time.time() - start_time
        logger.info(f"Cleaned table shape {cleaned.shape} in {elapsed_time:.2f} seconds")
        return cleaned

    def _to_ordered(self, series: pd.Series, col: str, levels: Sequence[str]) -> pd.Series:
        values = series.astype('object').where(series.notna(), None)
        unknown = sorted({str(v) for v in values.dropna().unique()} - set(levels))
        if unknown:
            raise SchemaError(f"Column '{col}' has values outside {list(levels)}: {unknown}", columns=[col])
        return pd.Series(pd.Categorical(values, categories=list(levels), ordered=True),
                         index=series.index, name=series.name)

    def _sparse_nominal_columns(self, df: pd.DataFrame) -> List[str]:
        sparse = []
        for col in df.columns:
            if col in self.protected_columns or col in self.ordinal_columns:
                continue
            if not _is_nominal(df[col]):
                continue
            counts = df[col].value_counts()
            counts = counts[counts > 0]
            minority = int(counts.min()) if len(counts) > 1 else 0
            if minority < self.min_category_count:
                sparse.append(col)
        return sparse


def merge_sources(left: pd.DataFrame,
                  right: pd.DataFrame,
                  on: Sequence[str],
                  prefer: Optional[str] = None,
                  how: str = 'inner') -> pd.DataFrame:
    """
    Join two sources on key columns without silently duplicating rows.

    Args:
        left: First source
        right: Second source
        on: Key columns
        prefer: 'left' or 'right'; names the authoritative source when keys repeat
        how: Join type passed to ``pandas.merge``

    Returns:
        Merged frame with one row per key combination
    """
    on = list(on)
    dup_left = bool(left.duplicated(subset=on).any())
    dup_right = bool(right.duplicated(subset=on).any())
    if dup_left or dup_right:
        if prefer not in ('left', 'right'):
            sides = [name for name, dup in (('left', dup_left), ('right', dup_right)) if dup]
            raise DuplicateKeyError(
                f"Duplicate keys {on} in {sides} source(s); pass prefer='left' or prefer='right'"
            )
        logger.warning(f"Duplicate keys {on} found; keeping first row per key and preferring {prefer} values")
        left = left.drop_duplicates(subset=on, keep='first')
        right = right.drop_duplicates(subset=on, keep='first')

    overlap = [col for col in left.columns if col in right.columns and col not in on]
    if prefer == 'left':
        right = right.drop(columns=overlap)
    elif prefer == 'right':
        left = left.drop(columns=overlap)
    return pd.merge(left, right, on=on, how=how, validate='one_to_one')


class SymptomDataValidator:
    """Validate data quality and consistency."""

    def __init__(self):
        self.validation_rules = {}

    def add_rule(self, feature: str, rule_type: str, **kwargs):
        """Add validation rule for a feature."""
        if feature not in self.validation_rules:
            self.validation_rules[feature] = []

        self.validation_rules[feature].append({
            'type': rule_type,
            'params': kwargs
        })

    def validate(self, df: pd.DataFrame) -> Dict[str, List[str]]:
        """Validate dataframe against rules."""
        violations = {}

        for feature, rules in self.validation_rules.items():
            if feature not in df.columns:
                continue

            feature_violations = []

            for rule in rules:
                if rule['type'] == 'range':
                    min_val = rule['params'].get('min')
                    max_val = rule['params'].get('max')

                    if min_val is not None:
                        violation_count = (df[feature] < min_val).sum()
                        if violation_count > 0:
                            feature_violations.append(f"{violation_count} values below minimum {min_val}")

                    if max_val is not None:
                        violation_count = (df[feature] > max_val).sum()
                        if violation_count > 0:
                            feature_violations.append(f"{violation_count} values above maximum {max_val}")

                elif rule['type'] == 'categorical':
                    allowed_values = rule['params'].get('allowed_values', [])
                    present = df[feature].dropna().astype(str)
                    violation_count = (~present.isin(allowed_values)).sum()

                    if violation_count > 0:
                        feature_violations.append(f"{violation_count} invalid categorical values")

                elif rule['type'] == 'missing_rate':
                    max_missing_rate = rule['params'].get('max_rate', 0.1)
                    missing_rate = df[feature].isnull().mean()

                    if missing_rate > max_missing_rate:
                        feature_violations.append(f"Missing rate {missing_rate:.2%} exceeds {max_missing_rate:.2%}")

            if feature_violations:
                violations[feature] = feature_violations

        return violations

    def setup_symptom_rules(self, binary_columns: Optional[Sequence[str]] = None):
        """Setup validation rules for the flu symptom data."""
        # Body temperature in degrees Fahrenheit
        self.add_rule('BodyTemp', 'range', min=95.0, max=107.0)

        for feature in ORDINAL_SYMPTOMS:
            self.add_rule(feature, 'categorical', allowed_values=SEVERITY_LEVELS)

        for feature in binary_columns or ['Nausea']:
            self.add_rule(feature, 'categorical', allowed_values=YES_NO_LEVELS)

        for feature in ['BodyTemp', 'Nausea']:
            self.add_rule(feature, 'missing_rate', max_rate=0.01)


class DummyEncoder(BaseEstimator, TransformerMixin):
    """Replace nominal columns with 0/1 indicators, dropping the first level."""

    def __init__(self, columns: Optional[List[str]] = None):
        self.columns = columns
        self.levels_: Dict[str, List] = {}

    def fit(self, X: pd.DataFrame, y=None):
        """Record the levels of every nominal column."""
        columns = self.columns if self.columns is not None else [c for c in X.columns if _is_nominal(X[c])]
        self.levels_ = {}
        for col in columns:
            if isinstance(X[col].dtype, pd.CategoricalDtype):
                levels = list(X[col].cat.categories)
            else:
                levels = sorted(X[col].dropna().unique().tolist(), key=str)
            self.levels_[col] = levels
        logger.debug(f"Dummy encoding {len(self.levels_)} nominal columns")
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        """Expand nominal columns into indicator columns."""
        X_transformed = X.copy()
        indicators = {}
        for col, levels in self.levels_.items():
            if col not in X_transformed.columns:
                continue
            values = X_transformed[col].astype('object')
            for level in levels[1:]:
                indicators[f'{col}_{level}'] = (values == level).astype(int)
            X_transformed = X_transformed.drop(columns=[col])
        if indicators:
            X_transformed = pd.concat([X_transformed, pd.DataFrame(indicators, index=X_transformed.index)], axis=1)
        return X_transformed


class OrdinalScoreEncoder(BaseEstimator, TransformerMixin):
    """Convert ordered categoricals to integer scores starting at 1."""

    def __init__(self, columns: Optional[List[str]] = None):
        self.columns = columns
        self.ordinal_features_: List[str] = []

    def fit(self, X: pd.DataFrame, y=None):
        if self.columns is not None:
            self.ordinal_features_ = list(self.columns)
        else:
            self.ordinal_features_ = [c for c in X.columns if _is_ordinal(X[c])]
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        X_transformed = X.copy()
        for col in self.ordinal_features_:
            if col in X_transformed.columns and _is_ordinal(X_transformed[col]):
                codes = X_transformed[col].cat.codes.astype(float)
                X_transformed[col] = codes.where(codes >= 0, np.nan) + 1
        return X_transformed


class ZeroVarianceFilter(BaseEstimator, TransformerMixin):
    """Drop columns holding a single value in the fitting data."""

    def __init__(self):
        self.constant_features_: List[str] = []

    def fit(self, X: pd.DataFrame, y=None):
        self.constant_features_ = [c for c in X.columns if X[c].nunique(dropna=False) <= 1]
        if self.constant_features_:
            logger.debug(f"Zero-variance columns removed: {self.constant_features_}")
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        return X.drop(columns=[c for c in self.constant_features_ if c in X.columns])


class DataScaler(BaseEstimator, TransformerMixin):
    """Scale numeric features while preserving categorical features."""

    def __init__(self, method: str = 'standard'):
        """
        Initialize scaler.

        Args:
            method: Scaling method ('standard', 'minmax')
        """
        self.method = method
        self.scaler_ = None
        self.numeric_features_ = []

    def fit(self, X: pd.DataFrame, y=None):
        """Fit the scaler."""
        self.numeric_features_ = X.select_dtypes(include=[np.number]).columns.tolist()

        if self.method == 'standard':
            self.scaler_ = StandardScaler()
        elif self.method == 'minmax':
            self.scaler_ = MinMaxScaler()
        else:
            raise ValueError(f"Unknown scaling method: {self.method}")

        if self.numeric_features_:
            self.scaler_.fit(X[self.numeric_features_].astype(float))

        logger.debug(f"Fitted {self.method} scaler for {len(self.numeric_features_)} numeric features")
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        """Transform by scaling numeric features."""
        X_transformed = X.copy()

        if self.numeric_features_ and self.scaler_:
            available_numeric = [col for col in self.numeric_features_ if col in X_transformed.columns]
            if len(available_numeric) == len(self.numeric_features_):
                X_transformed[available_numeric] = self.scaler_.transform(
                    X_transformed[available_numeric].astype(float)
                )
            elif available_numeric:
                raise ValueError(f"Scaler fitted on {self.numeric_features_} but received {available_numeric}")

        return X_transformed
