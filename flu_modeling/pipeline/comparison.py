"""
Model comparison engine.

Runs the same tune -> select -> final fit sequence for every configured
model family on one outcome and collects the results in a single table.
A family that cannot be selected or refit is reported with its status
instead of stopping the comparison.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import joblib
import numpy as np
import pandas as pd
import yaml
from dask.distributed import Client

from .exceptions import PipelineError, SelectionError
from .metrics import as_metric_set
from .models import variable_importance
from .splitting import DataSplit, ResampleSet
from .tuning import LastFitResult, TuneControl, TuneResults, last_fit, tune_grid
from .workflow import Workflow, make_workflow

logger = logging.getLogger(__name__)

STATUS_OK = 'ok'
STATUS_SELECTION_FAILED = 'selection_failed'
STATUS_FINAL_FIT_FAILED = 'final_fit_failed'

DEFAULT_MODELS: Dict[str, Dict[str, Any]] = {
    'null': {'family': 'null'},
    'linear': {'family': 'linear'},
    'lasso': {
        'family': 'lasso',
        'tune': ['penalty'],
        'grid': {'type': 'values', 'values': {'penalty': {'log10_from': -3, 'log10_to': 0, 'length': 30}}},
    },
    'tree': {
        'family': 'decision_tree',
        'tune': ['cost_complexity', 'tree_depth'],
        'grid': {'type': 'regular', 'levels': 5},
    },
    'forest': {
        'family': 'random_forest',
        'fixed': {'trees': 1000},
        'tune': ['mtry', 'min_n'],
        'grid': {'type': 'latin_hypercube', 'size': 25},
    },
}

SUMMARY_COLUMNS = ['model', 'metric', 'mean', 'std_err', 'n', 'n_failed', 'family_n_failed',
                   'test_estimate', 'status']


def _plain(value):
    """Convert numpy scalars and NaN into YAML-friendly values."""
    if isinstance(value, (np.floating, float)):
        return None if np.isnan(value) else float(value)
    if isinstance(value, np.integer):
        return int(value)
    return value


@dataclass
class FamilyResult:
    """Outcome of tuning and refitting one model family."""
    name: str
    workflow: Workflow
    tuning: Optional[TuneResults] = None
    best_params: Dict[str, Any] = field(default_factory=dict)
    best_config: Optional[str] = None
    final: Optional[LastFitResult] = None
    status: str = STATUS_OK
    error: Optional[str] = None

    @property
    def family(self) -> str:
        return self.workflow.model.family.value

    @property
    def n_failed(self) -> int:
        return 0 if self.tuning is None else int(self.tuning.failure_counts().sum())

    def cv_metrics(self) -> pd.DataFrame:
        """Aggregated resampling metrics of the selected configuration."""
        if self.tuning is None or self.best_config is None:
            return pd.DataFrame(columns=['metric', 'mean', 'std_err', 'n', 'n_failed'])
        summary = self.tuning.collect_metrics()
        return summary[summary['config'] == self.best_config][['metric', 'mean', 'std_err', 'n', 'n_failed']]


@dataclass
class ComparisonResult:
    """Results of every model family for one outcome."""
    outcome: str
    mode: str
    metric_names: List[str]
    families: Dict[str, FamilyResult] = field(default_factory=dict)

    def summary_table(self) -> pd.DataFrame:
        """
        One row per (model, metric) with resampling and held-out estimates.

        ``n`` and ``n_failed`` count the folds of the selected configuration;
        ``family_n_failed`` counts failed fits over the whole grid.
        """
        rows = []
        for name, result in self.families.items():
            cv = result.cv_metrics().set_index('metric')
            test = {}
            if result.final is not None:
                test = dict(zip(result.final.metrics['metric'], result.final.metrics['estimate']))
            for metric in self.metric_names:
                in_cv = metric in cv.index
                rows.append({
                    'model': name,
                    'metric': metric,
                    'mean': cv.at[metric, 'mean'] if in_cv else np.nan,
                    'std_err': cv.at[metric, 'std_err'] if in_cv else np.nan,
                    'n': int(cv.at[metric, 'n']) if in_cv else 0,
                    'n_failed': int(cv.at[metric, 'n_failed']) if in_cv else 0,
                    'family_n_failed': result.n_failed,
                    'test_estimate': test.get(metric, np.nan),
                    'status': result.status,
                })
        return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)

    def best_model(self, metric: Optional[str] = None) -> Optional[str]:
        """Family with the best resampling mean among those that completed."""
        metric_def = as_metric_set(self.metric_names, self.mode).get(metric)
        table = self.summary_table()
        table = table[(table['metric'] == metric_def.name) & (table['status'] == STATUS_OK)]
        table = table.dropna(subset=['mean'])
        if table.empty:
            return None
        table = table.sort_values('mean', ascending=not metric_def.larger_is_better, kind='mergesort')
        return table['model'].iloc[0]

    def to_dict(self) -> Dict[str, Any]:
        families = {}
        for name, result in self.families.items():
            families[name] = {
                'family': result.family,
                'status': result.status,
                'error': result.error,
                'best_config': result.best_config,
                'best_params': {k: _plain(v) for k, v in result.best_params.items()},
                'n_failed_fits': result.n_failed,
                'cv': {row['metric']: {k: _plain(row[k]) for k in ('mean', 'std_err', 'n', 'n_failed')}
                       for _, row in result.cv_metrics().iterrows()},
                'test': ({} if result.final is None else
                         {m: _plain(v) for m, v in zip(result.final.metrics['metric'],
                                                       result.final.metrics['estimate'])}),
            }
        return {'outcome': self.outcome, 'mode': self.mode, 'metrics': list(self.metric_names),
                'best_model': self.best_model(), 'families': families}

    def save(self, output_dir: str) -> Dict[str, Path]:
        """Write summaries, per-family predictions and fitted models under ``output_dir``."""
        out = Path(output_dir)
        (out / 'models').mkdir(parents=True, exist_ok=True)
        written = {}

        summary = self.summary_table()
        written['summary_csv'] = out / f'{self.outcome}_model_summaries.csv'
        summary.to_csv(written['summary_csv'], index=False)
        written['summary_yaml'] = out / f'{self.outcome}_model_summaries.yaml'
        written['summary_yaml'].write_text(yaml.safe_dump(self.to_dict(), sort_keys=False), encoding='utf-8')

        test_metrics = {name: {m: _plain(v) for m, v in zip(r.final.metrics['metric'], r.final.metrics['estimate'])}
                        for name, r in self.families.items() if r.final is not None}
        written['test_metrics'] = out / f'{self.outcome}_test_metrics.yaml'
        written['test_metrics'].write_text(yaml.safe_dump(test_metrics, sort_keys=False), encoding='utf-8')

        for name, result in self.families.items():
            if result.tuning is not None:
                result.tuning.collect_metrics().to_csv(out / f'{self.outcome}_{name}_tuning.csv', index=False)
            if result.final is None:
                continue
            result.final.predictions.to_csv(out / f'{self.outcome}_{name}_predictions.csv', index=False)
            model_path = out / 'models' / f'{self.outcome}_{name}.joblib'
            joblib.dump(result.final.fitted, model_path)
            written[f'model_{name}'] = model_path
        logger.info(f"Comparison results for {self.outcome} saved to {out}")
        return written


class ModelComparison:
    """Tune, select and refit every configured model family on one outcome."""

    def __init__(self, config: Dict, tracker=None, client: Optional[Client] = None):
        """
        Initialize the comparison.

        Args:
            config: Full pipeline configuration (``models``, ``tuning``, ``random_seed``)
            tracker: Optional ``ExperimentTracker``
            client: Optional dask client shared by every family's search
        """
        self.config = config
        self.tracker = tracker
        self.client = client
        self.models_config = config.get('models') or DEFAULT_MODELS
        self.seed = config.get('random_seed')
        tuning = config.get('tuning', {})
        self.selection = tuning.get('selection', 'best')
        if self.selection not in ('best', 'one_std_err'):
            raise ValueError(f"Unknown selection rule: {self.selection}")

    def _metrics_for(self, mode: str) -> List[str]:
        configured = self.config.get('tuning', {}).get('metrics', {})
        names = configured.get(mode) if isinstance(configured, dict) else configured
        return as_metric_set(names, mode).names

    def run(self, split: DataSplit, resamples: ResampleSet, outcome: str, mode: str,
            control: Optional[TuneControl] = None) -> ComparisonResult:
        """
        Compare every enabled model family on ``outcome``.

        Args:
            split: Initial split; its test partition is read only by the final fits
            resamples: Folds of the training partition
            outcome: Outcome column
            mode: 'regression' or 'classification'
            control: Tuning execution settings

        Returns:
            ComparisonResult
        """
        control = control or TuneControl.from_config(self.config)
        metric_names = self._metrics_for(mode)
        training = split.training()
        result = ComparisonResult(outcome=outcome, mode=mode, metric_names=metric_names)
        start_time = time.time()

        for name, model_cfg in self.models_config.items():
            model_cfg = dict(model_cfg or {})
            if not model_cfg.get('enabled', True):
                logger.info(f"Skipping disabled model {name}")
                continue
            family = model_cfg.get('family', name)
            workflow = make_workflow(training, outcome, family, mode, model_cfg, seed=self.seed, name=name)
            result.families[name] = self._run_family(workflow, model_cfg, split, resamples,
                                                     metric_names, control)

        elapsed_time = time.time() - start_time
        logger.info(f"Compared {len(result.families)} models for {outcome} in {elapsed_time:.2f} seconds; "
                    f"best: {result.best_model()}")
        if self.tracker is not None:
            self.tracker.log_model_summary(outcome, result.summary_table().to_dict('records'))
        return result

    def _run_family(self, workflow: Workflow, model_cfg: Dict, split: DataSplit,
                    resamples: ResampleSet, metric_names: List[str], control: TuneControl) -> FamilyResult:
        name = workflow.label
        family_result = FamilyResult(name=name, workflow=workflow)
        parameters = workflow.tunable_parameters(split.training())
        family_result.tuning = tune_grid(workflow, resamples, grid=model_cfg.get('grid'),
                                         metrics=metric_names, control=control,
                                         client=self.client, param_info=parameters)
        try:
            if self.selection == 'one_std_err':
                params = family_result.tuning.select_by_one_std_err()
            else:
                params = family_result.tuning.select_best()
        except SelectionError as e:
            logger.error(f"Model {name}: {e}")
            family_result.status = STATUS_SELECTION_FAILED
            family_result.error = str(e)
            return family_result

        family_result.best_params = params
        family_result.best_config = self._config_of(family_result.tuning, params)
        try:
            family_result.final = last_fit(workflow.finalize(params), split, metrics=metric_names)
        except (PipelineError, ValueError) as e:
            logger.error(f"Final fit of {name} failed: {e}")
            family_result.status = STATUS_FINAL_FIT_FAILED
            family_result.error = str(e)
            return family_result

        importance = variable_importance(family_result.final.fitted.model)
        if not importance.empty:
            top = ", ".join(importance['variable'].head(5))
            logger.info(f"Model {name} top predictors: {top}")
        return family_result

    @staticmethod
    def _config_of(tuning: TuneResults, params: Dict[str, Any]) -> str:
        grid = tuning.grid
        mask = pd.Series(True, index=grid.index)
        for key, value in params.items():
            mask &= grid[key] == value
        return grid.loc[mask, 'config'].iloc[0]
