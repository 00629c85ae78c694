"""
Train/test partitioning and repeated k-fold resampling.

Both the initial split and the folds can be stratified on an outcome column.
A continuous outcome is binned into quantile strata first, so the outcome
distribution is roughly the same in every partition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Union

import numpy as np
import pandas as pd
from sklearn.model_selection import (
    train_test_split, RepeatedKFold, RepeatedStratifiedKFold,
)

from .exceptions import PartitionError, LeakageError

logger = logging.getLogger(__name__)

# Minimum rows per quantile bin before the bin count is reduced
MIN_ROWS_PER_BIN = 20


def make_strata(values: pd.Series, breaks: int = 4, pool: float = 0.1) -> np.ndarray:
    """
    Build integer stratum labels for a column.

    Args:
        values: Column to stratify on
        breaks: Number of quantile bins for a numeric column
        pool: Strata holding less than this share of rows are merged

    Returns:
        Array of stratum labels, one per row
    """
    n = len(values)
    if n == 0:
        return np.array([], dtype=int)

    numeric = pd.api.types.is_numeric_dtype(values) and not pd.api.types.is_bool_dtype(values)
    if numeric:
        n_bins = breaks
        if n / breaks < MIN_ROWS_PER_BIN:
            n_bins = max(1, min(breaks, n // MIN_ROWS_PER_BIN))
            logger.warning(f"Too few rows ({n}) for {breaks} strata; using {n_bins} quantile bins")
        if n_bins < 2:
            return np.zeros(n, dtype=int)
        bins = pd.qcut(values.rank(method='first'), q=n_bins, labels=False)
        return _pool_ordered(np.asarray(bins, dtype=int), pool)

    codes = pd.Series(pd.Categorical(values.astype('object')).codes, index=values.index)
    counts = codes.value_counts()
    small = counts[counts < pool * n].index
    if len(small) > 0:
        pooled_label = int(small.min())
        codes = codes.where(~codes.isin(small), pooled_label)
        if (codes == pooled_label).sum() < 2 and codes.nunique() > 1:
            largest = int(codes.value_counts().idxmax())
            codes = codes.where(codes != pooled_label, largest)
    return pd.factorize(codes, sort=True)[0]


def _pool_ordered(labels: np.ndarray, pool: float) -> np.ndarray:
    """Merge undersized quantile bins into their neighbour."""
    labels = labels.copy()
    n = len(labels)
    while True:
        uniq, counts = np.unique(labels, return_counts=True)
        if len(uniq) < 2:
            break
        smallest = int(np.argmin(counts))
        if counts[smallest] >= pool * n:
            break
        neighbour = uniq[smallest - 1] if smallest > 0 else uniq[smallest + 1]
        labels[labels == uniq[smallest]] = neighbour
    return pd.factorize(labels, sort=True)[0]


def _supports_split(labels: np.ndarray, n_train: int, n_test: int) -> bool:
    _, counts = np.unique(labels, return_counts=True)
    n_classes = len(counts)
    return n_classes > 1 and counts.min() >= 2 and n_train >= n_classes and n_test >= n_classes


@dataclass
class DataSplit:
    """Disjoint training and testing row sets of one table.

    The testing rows stay locked until the final evaluation releases them.
    """
    data: pd.DataFrame
    train_rows: np.ndarray
    test_rows: np.ndarray
    prop: float
    strata: Optional[str] = None
    seed: Optional[int] = None
    _test_released: bool = field(default=False, repr=False)

    @property
    def n_train(self) -> int:
        return len(self.train_rows)

    @property
    def n_test(self) -> int:
        return len(self.test_rows)

    def training(self) -> pd.DataFrame:
        """Training partition (original index preserved)."""
        return self.data.iloc[self.train_rows]

    def testing(self) -> pd.DataFrame:
        """Held-out partition; only available after the final fit."""
        if not self._test_released:
            raise LeakageError(
                "The test partition is reserved for the final evaluation; "
                "use last_fit() instead of reading it directly"
            )
        return self.data.iloc[self.test_rows]

    def release_test(self) -> pd.DataFrame:
        """Unlock and return the testing partition. Called by the final evaluation."""
        self._test_released = True
        return self.testing()

    def __repr__(self) -> str:
        return f"<Training/Testing/Total> <{self.n_train}/{self.n_test}/{len(self.data)}>"


def initial_split(df: pd.DataFrame,
                  prop: float = 0.75,
                  strata: Optional[str] = None,
                  seed: Optional[int] = None,
                  breaks: int = 4,
                  pool: float = 0.1) -> DataSplit:
    """
    Split a table into training and testing partitions.

    The training partition receives ``floor(prop * n)`` rows.

    Args:
        df: Cleaned observation table
        prop: Share of rows assigned to training
        strata: Column whose distribution is preserved in both partitions
        seed: Random seed; the same seed always yields the same split
        breaks: Quantile bins for a continuous stratification column
        pool: Minimum stratum share before pooling

    Returns:
        DataSplit
    """
    n = len(df)
    if not 0 < prop < 1:
        raise PartitionError("Split proportion must lie strictly between 0 and 1", prop=prop, n_rows=n)
    n_train = int(np.floor(prop * n))
    n_test = n - n_train
    if n_train == 0 or n_test == 0:
        raise PartitionError("Split proportion leaves an empty partition", prop=prop, n_rows=n)
    if strata is not None and strata not in df.columns:
        raise PartitionError("Stratification column not found", strata=strata)

    positions = np.arange(n)
    labels = None
    if strata is not None:
        labels = make_strata(df[strata], breaks=breaks, pool=pool)
        if not _supports_split(labels, n_train, n_test):
            logger.warning(f"Strata of '{strata}' cannot support a stratified {n_train}/{n_test} split; "
                           f"falling back to an unstratified split")
            labels = None

    train_pos, test_pos = train_test_split(
        positions, train_size=n_train, test_size=n_test, stratify=labels, random_state=seed
    )
    split = DataSplit(
        data=df,
        train_rows=np.sort(train_pos),
        test_rows=np.sort(test_pos),
        prop=prop,
        strata=strata,
        seed=seed,
    )
    logger.info(f"Initial split {split!r} (prop={prop}, strata={strata}, seed={seed})")
    return split


@dataclass(frozen=True)
class Fold:
    """One (analysis, assessment) pair of positional row indices."""
    id: str
    repeat: int
    fold: int
    analysis: np.ndarray
    assessment: np.ndarray

    def analysis_data(self, data: pd.DataFrame) -> pd.DataFrame:
        return data.iloc[self.analysis]

    def assessment_data(self, data: pd.DataFrame) -> pd.DataFrame:
        return data.iloc[self.assessment]


@dataclass
class ResampleSet:
    """Repeated V-fold resamples of a training table."""
    data: pd.DataFrame
    folds: List[Fold]
    v: int
    repeats: int
    strata: Optional[str] = None
    seed: Optional[int] = None

    def __iter__(self) -> Iterator[Fold]:
        return iter(self.folds)

    def __len__(self) -> int:
        return len(self.folds)

    def __getitem__(self, item: int) -> Fold:
        return self.folds[item]


def vfold_cv(data: Union[pd.DataFrame, DataSplit],
             v: int = 10,
             repeats: int = 1,
             strata: Optional[str] = None,
             seed: Optional[int] = None,
             breaks: int = 4,
             pool: float = 0.1) -> ResampleSet:
    """
    Create ``v * repeats`` stratified folds of the training data.

    A ``DataSplit`` is accepted and only its training partition is used.

    Args:
        data: Training table or split
        v: Number of folds per repeat
        repeats: Number of repeats
        strata: Column to stratify assessment sets on
        seed: Random seed
        breaks: Quantile bins for a continuous stratification column
        pool: Minimum stratum share before pooling

    Returns:
        ResampleSet
    """
    if isinstance(data, DataSplit):
        data = data.training()
    n = len(data)
    if v < 2:
        raise PartitionError("At least two folds are required", v=v, repeats=repeats, n_rows=n)
    if repeats < 1:
        raise PartitionError("At least one repeat is required", v=v, repeats=repeats, n_rows=n)
    if v > n:
        raise PartitionError("More folds than rows leaves empty assessment sets", v=v, repeats=repeats, n_rows=n)
    if strata is not None and strata not in data.columns:
        raise PartitionError("Stratification column not found", strata=strata)

    positions = np.arange(n)
    labels = None
    if strata is not None:
        labels = make_strata(data[strata], breaks=breaks, pool=pool)
        _, counts = np.unique(labels, return_counts=True)
        if len(counts) < 2 or counts.min() < v:
            logger.warning(f"Strata of '{strata}' have fewer than {v} rows; using unstratified folds")
            labels = None

    if labels is None:
        splitter = RepeatedKFold(n_splits=v, n_repeats=repeats, random_state=seed)
        split_iter = splitter.split(positions)
    else:
        splitter = RepeatedStratifiedKFold(n_splits=v, n_repeats=repeats, random_state=seed)
        split_iter = splitter.split(positions, labels)

    folds = []
    for i, (analysis, assessment) in enumerate(split_iter):
        repeat, fold = divmod(i, v)
        if len(assessment) == 0 or len(analysis) == 0:
            raise PartitionError("Resampling produced an empty fold", v=v, repeats=repeats, n_rows=n)
        fold_id = f"Repeat{repeat + 1}_Fold{fold + 1:02d}" if repeats > 1 else f"Fold{fold + 1:02d}"
        folds.append(Fold(id=fold_id, repeat=repeat + 1, fold=fold + 1,
                          analysis=np.sort(analysis), assessment=np.sort(assessment)))

    logger.info(f"Created {len(folds)} resamples ({v}-fold x {repeats} repeats, strata={strata})")
    return ResampleSet(data=data, folds=folds, v=v, repeats=repeats, strata=strata, seed=seed)
