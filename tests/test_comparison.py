"""
Tests for the model comparison engine.
"""

import pytest
import pandas as pd
import numpy as np
import yaml
import joblib

from flu_modeling.pipeline import tuning
from flu_modeling.pipeline.comparison import (
    ModelComparison, SUMMARY_COLUMNS, STATUS_OK, STATUS_SELECTION_FAILED,
)
from flu_modeling.pipeline.metrics import REGRESSION, CLASSIFICATION
from flu_modeling.pipeline.splitting import initial_split, vfold_cv
from flu_modeling.pipeline.tuning import TuneControl


def always_fails(workflow, data, fold, params, metric_set):
    raise RuntimeError("solver diverged")


def largest_penalty_fails_first_fold(workflow, data, fold, params, metric_set):
    if params.get('penalty', 0) > 0.5 and fold.fold == 1:
        raise RuntimeError("solver diverged")
    return {'rmse': 1.0 + params.get('penalty', 0), 'rsq': 0.1}


@pytest.fixture
def regression_split(model_data):
    split = initial_split(model_data, prop=0.7, strata='BodyTemp', seed=123)
    resamples = vfold_cv(split, v=3, strata='BodyTemp', seed=123)
    return split, resamples


class TestModelComparison:
    """Test comparing model families on one outcome."""

    def test_regression_comparison(self, sample_config, regression_split, dask_client):
        split, resamples = regression_split
        comparison = ModelComparison(sample_config, client=dask_client)
        result = comparison.run(split, resamples, 'BodyTemp', REGRESSION, TuneControl(n_workers=2))

        assert list(result.families) == ['null', 'linear', 'lasso', 'tree', 'forest']
        summary = result.summary_table()
        assert list(summary.columns) == SUMMARY_COLUMNS
        assert len(summary) == 10
        assert (summary['status'] == STATUS_OK).all()
        assert summary['test_estimate'].notna().all()

        lasso = result.families['lasso']
        assert set(lasso.best_params) == {'penalty'}
        assert lasso.best_config.startswith('Model')
        assert lasso.final.params == lasso.best_params
        assert result.families['null'].best_params == {}

        forest = result.families['forest']
        assert forest.tuning.grid['mtry'].max() <= len(forest.final.fitted.prepared.columns)
        assert result.best_model('rmse') in result.families

    def test_baseline_rmse_is_spread_of_outcome(self, sample_config, regression_split, dask_client):
        split, resamples = regression_split
        config = dict(sample_config, models={'null': {'family': 'null'}})
        result = ModelComparison(config, client=dask_client).run(split, resamples, 'BodyTemp', REGRESSION)

        final = result.families['null'].final
        y_train = split.training()['BodyTemp'].to_numpy()
        assert np.isclose(final.metric('rmse', partition='train'), np.std(y_train, ddof=0))

    def test_classification_comparison(self, sample_config, model_data, dask_client):
        split = initial_split(model_data, prop=0.7, strata='Nausea', seed=123)
        resamples = vfold_cv(split, v=3, strata='Nausea', seed=123)
        config = dict(sample_config)
        config['models'] = {k: v for k, v in sample_config['models'].items() if k in ('null', 'lasso', 'tree')}

        result = ModelComparison(config, client=dask_client).run(split, resamples, 'Nausea', CLASSIFICATION)

        assert result.metric_names == ['roc_auc', 'accuracy']
        summary = result.summary_table()
        auc = summary[summary['metric'] == 'roc_auc'].set_index('model')['test_estimate']
        assert auc.between(0, 1).all()
        assert result.best_model('roc_auc') in ('null', 'lasso', 'tree')

    def test_selection_failure_does_not_stop_comparison(self, monkeypatch, sample_config,
                                                        regression_split, dask_client, temp_directory):
        monkeypatch.setattr(tuning, 'evaluate_pair', always_fails)
        split, resamples = regression_split
        config = dict(sample_config)
        config['models'] = {k: sample_config['models'][k] for k in ('null', 'lasso')}

        result = ModelComparison(config, client=dask_client).run(split, resamples, 'BodyTemp', REGRESSION)

        assert {r.status for r in result.families.values()} == {STATUS_SELECTION_FAILED}
        assert result.families['lasso'].n_failed == 4 * 3
        assert result.families['lasso'].final is None
        assert result.best_model() is None
        summary = result.summary_table()
        assert summary['mean'].isna().all()
        assert (summary['n'] == 0).all()
        assert summary.loc[summary['model'] == 'lasso', 'family_n_failed'].eq(12).all()

        written = result.save(temp_directory)
        assert yaml.safe_load(written['test_metrics'].read_text()) == {}
        assert (temp_directory / 'BodyTemp_lasso_tuning.csv').exists()

    def test_failure_counts_of_selected_configuration(self, monkeypatch, sample_config,
                                                      regression_split, dask_client):
        monkeypatch.setattr(tuning, 'evaluate_pair', largest_penalty_fails_first_fold)
        split, resamples = regression_split
        config = dict(sample_config, models={'lasso': sample_config['models']['lasso']})

        result = ModelComparison(config, client=dask_client).run(split, resamples, 'BodyTemp', REGRESSION)

        lasso = result.families['lasso']
        assert lasso.best_config == 'Model01'
        summary = result.summary_table()
        assert (summary['n'] == 3).all()
        assert (summary['n_failed'] == 0).all()
        assert (summary['family_n_failed'] == 1).all()

    def test_disabled_model_skipped(self, sample_config, regression_split, dask_client):
        split, resamples = regression_split
        config = dict(sample_config, models={
            'null': {'family': 'null'},
            'linear': {'family': 'linear', 'enabled': False},
        })
        result = ModelComparison(config, client=dask_client).run(split, resamples, 'BodyTemp', REGRESSION)
        assert list(result.families) == ['null']

    def test_unknown_selection_rule(self, sample_config):
        config = dict(sample_config, tuning={'selection': 'median'})
        with pytest.raises(ValueError):
            ModelComparison(config)

    def test_one_std_err_selection(self, sample_config, regression_split, dask_client):
        split, resamples = regression_split
        config = dict(sample_config, models={'lasso': sample_config['models']['lasso']})
        config['tuning'] = dict(sample_config['tuning'], selection='one_std_err')

        result = ModelComparison(config, client=dask_client).run(split, resamples, 'BodyTemp', REGRESSION)
        lasso = result.families['lasso']
        assert lasso.status == STATUS_OK
        best = lasso.tuning.select_best()
        assert lasso.best_params['penalty'] >= best['penalty']

    def test_save(self, sample_config, regression_split, dask_client, temp_directory):
        split, resamples = regression_split
        config = dict(sample_config, models={k: sample_config['models'][k] for k in ('null', 'lasso')})
        result = ModelComparison(config, client=dask_client).run(split, resamples, 'BodyTemp', REGRESSION)

        written = result.save(temp_directory)

        summary = pd.read_csv(written['summary_csv'])
        assert list(summary.columns) == SUMMARY_COLUMNS
        report = yaml.safe_load(written['summary_yaml'].read_text())
        assert report['outcome'] == 'BodyTemp'
        assert report['families']['lasso']['status'] == STATUS_OK
        assert set(yaml.safe_load(written['test_metrics'].read_text())) == {'null', 'lasso'}

        predictions = pd.read_csv(temp_directory / 'BodyTemp_lasso_predictions.csv')
        assert len(predictions) == split.n_test
        model = joblib.load(written['model_lasso'])
        assert len(model.predict(split.testing())) == split.n_test

    def test_tracker_receives_summary(self, sample_config, regression_split, dask_client):
        class RecordingTracker:
            def __init__(self):
                self.calls = []

            def log_model_summary(self, outcome, rows):
                self.calls.append((outcome, rows))

        tracker = RecordingTracker()
        split, resamples = regression_split
        config = dict(sample_config, models={'null': {'family': 'null'}})
        ModelComparison(config, tracker=tracker, client=dask_client).run(split, resamples, 'BodyTemp', REGRESSION)

        [(outcome, rows)] = tracker.calls
        assert outcome == 'BodyTemp'
        assert {row['metric'] for row in rows} == {'rmse', 'rsq'}
