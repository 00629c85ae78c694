"""
Tests for the train/test split and repeated v-fold resampling.
"""

import pytest
import pandas as pd
import numpy as np

from flu_modeling.pipeline.exceptions import PartitionError, LeakageError
from flu_modeling.pipeline.splitting import make_strata, initial_split, vfold_cv


@pytest.fixture
def hundred_rows():
    rng = np.random.RandomState(1)
    return pd.DataFrame({'BodyTemp': rng.normal(99, 1, size=100), 'x': rng.normal(size=100)})


class TestInitialSplit:
    """Test the initial split."""

    def test_sizes_and_disjointness(self, hundred_rows):
        split = initial_split(hundred_rows, prop=0.7, strata='BodyTemp', seed=123)

        assert split.n_train == 70
        assert split.n_test == 30
        assert len(np.intersect1d(split.train_rows, split.test_rows)) == 0
        assert sorted(np.concatenate([split.train_rows, split.test_rows])) == list(range(100))
        assert repr(split) == '<Training/Testing/Total> <70/30/100>'
        train_mean = split.training()['BodyTemp'].mean()
        test_mean = split.release_test()['BodyTemp'].mean()
        assert abs(train_mean - test_mean) < 0.5

    @pytest.mark.parametrize('prop', [0.5, 0.7, 0.75, 0.9])
    def test_sizes_and_balance_for_proportion(self, prop):
        rng = np.random.RandomState(7)
        df = pd.DataFrame({'BodyTemp': rng.normal(99, 1, size=1000)})
        split = initial_split(df, prop=prop, strata='BodyTemp', seed=123)

        assert split.n_train == int(np.floor(prop * 1000))
        assert split.n_train + split.n_test == 1000
        assert len(np.intersect1d(split.train_rows, split.test_rows)) == 0
        train_mean = split.training()['BodyTemp'].mean()
        test_mean = split.release_test()['BodyTemp'].mean()
        assert abs(train_mean - test_mean) < 0.25

    def test_training_size_is_floor(self, hundred_rows):
        split = initial_split(hundred_rows.iloc[:99], prop=0.75, seed=1)
        assert split.n_train == 74
        assert split.n_test == 25

    def test_deterministic_per_seed(self, hundred_rows):
        a = initial_split(hundred_rows, prop=0.7, strata='BodyTemp', seed=123)
        b = initial_split(hundred_rows, prop=0.7, strata='BodyTemp', seed=123)
        c = initial_split(hundred_rows, prop=0.7, strata='BodyTemp', seed=124)

        assert np.array_equal(a.train_rows, b.train_rows)
        assert not np.array_equal(a.train_rows, c.train_rows)

    def test_stratified_quartiles_in_both_partitions(self, hundred_rows):
        split = initial_split(hundred_rows, prop=0.7, strata='BodyTemp', seed=123)
        strata = make_strata(hundred_rows['BodyTemp'])

        train_counts = np.bincount(strata[split.train_rows], minlength=4)
        test_counts = np.bincount(strata[split.test_rows], minlength=4)
        assert (train_counts >= 17).all()
        assert (test_counts >= 7).all()

    @pytest.mark.parametrize('prop', [0.0, 1.0, 1.5, -0.2])
    def test_invalid_proportion(self, hundred_rows, prop):
        with pytest.raises(PartitionError, match='prop'):
            initial_split(hundred_rows, prop=prop, seed=1)

    def test_empty_partition(self):
        df = pd.DataFrame({'x': [1.0, 2.0]})
        with pytest.raises(PartitionError):
            initial_split(df, prop=0.3, seed=1)

    def test_missing_strata_column(self, hundred_rows):
        with pytest.raises(PartitionError, match='strata'):
            initial_split(hundred_rows, prop=0.7, strata='Nausea', seed=1)

    def test_small_strata_fall_back_to_unstratified(self, caplog):
        df = pd.DataFrame({'group': ['a'] * 9 + ['b'], 'x': range(10)})
        split = initial_split(df, prop=0.5, strata='group', seed=3)
        assert split.n_train == 5
        assert 'falling back' in caplog.text

    def test_testing_locked_until_released(self, hundred_rows):
        split = initial_split(hundred_rows, prop=0.7, seed=1)
        with pytest.raises(LeakageError):
            split.testing()

        test_df = split.release_test()
        assert len(test_df) == 30
        assert len(split.testing()) == 30


class TestMakeStrata:
    """Test stratum construction."""

    def test_numeric_quartiles(self, hundred_rows):
        strata = make_strata(hundred_rows['BodyTemp'], breaks=4)
        assert sorted(np.bincount(strata)) == [25, 25, 25, 25]

    def test_few_rows_reduce_bins(self):
        strata = make_strata(pd.Series(np.arange(50, dtype=float)), breaks=4)
        assert len(np.unique(strata)) == 2

    def test_categorical_small_levels_pooled(self):
        values = pd.Series(['a'] * 50 + ['b'] * 45 + ['c'] * 3 + ['d'] * 2)
        strata = make_strata(values, pool=0.1)
        assert len(np.unique(strata)) == 3


class TestVfoldCV:
    """Test repeated v-fold resampling."""

    def test_fold_count_and_disjointness(self, hundred_rows):
        split = initial_split(hundred_rows, prop=0.7, strata='BodyTemp', seed=123)
        resamples = vfold_cv(split, v=5, repeats=2, strata='BodyTemp', seed=123)

        assert len(resamples) == 10
        assert resamples[0].id == 'Repeat1_Fold01'
        for fold in resamples:
            assert len(np.intersect1d(fold.analysis, fold.assessment)) == 0
            assert len(fold.analysis) + len(fold.assessment) == 70
            assert len(fold.assessment) > 0

    def test_assessment_sets_partition_each_repeat(self, hundred_rows):
        resamples = vfold_cv(hundred_rows, v=4, repeats=3, seed=9)
        for repeat in (1, 2, 3):
            assessed = np.concatenate([f.assessment for f in resamples if f.repeat == repeat])
            assert sorted(assessed) == list(range(100))

    def test_uses_training_partition_only(self, hundred_rows):
        split = initial_split(hundred_rows, prop=0.7, seed=2)
        resamples = vfold_cv(split, v=5, seed=2)
        assert resamples.data.index.equals(split.training().index)
        assert resamples[0].id == 'Fold01'

    def test_deterministic_per_seed(self, hundred_rows):
        a = vfold_cv(hundred_rows, v=5, repeats=2, strata='BodyTemp', seed=42)
        b = vfold_cv(hundred_rows, v=5, repeats=2, strata='BodyTemp', seed=42)
        for fa, fb in zip(a, b):
            assert np.array_equal(fa.assessment, fb.assessment)

    @pytest.mark.parametrize('v,repeats', [(1, 1), (5, 0), (101, 1)])
    def test_invalid_parameters(self, hundred_rows, v, repeats):
        with pytest.raises(PartitionError):
            vfold_cv(hundred_rows, v=v, repeats=repeats, seed=1)
