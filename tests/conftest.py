"""Test configuration and fixtures."""

import pytest
import pandas as pd
import numpy as np
import tempfile
from pathlib import Path
from dask.distributed import Client

from flu_modeling.pipeline.preprocessing import SEVERITY_LEVELS, YES_NO_LEVELS


@pytest.fixture
def model_data():
    """Cleaned symptom table: ordinal severity, Yes/No symptoms and both outcomes."""
    rng = np.random.RandomState(123)
    n = 120

    def yes_no(p):
        values = np.where(rng.uniform(size=n) < p, 'Yes', 'No')
        return pd.Categorical(values, categories=YES_NO_LEVELS)

    weakness = rng.choice(SEVERITY_LEVELS, size=n, p=[0.1, 0.3, 0.4, 0.2])
    chills = yes_no(0.6)
    vomit = yes_no(0.2)
    fatigue = yes_no(0.8)
    runny_nose = yes_no(0.5)
    score = pd.Categorical(weakness, categories=SEVERITY_LEVELS).codes
    body_temp = 98.3 + 0.5 * (np.asarray(chills) == 'Yes') + 0.2 * score + rng.normal(0, 0.5, size=n)
    nausea_p = np.where(np.asarray(vomit) == 'Yes', 0.7, 0.25)

    return pd.DataFrame({
        'Weakness': pd.Categorical(weakness, categories=SEVERITY_LEVELS, ordered=True),
        'ChillsSweats': chills,
        'Vomit': vomit,
        'Fatigue': fatigue,
        'RunnyNose': runny_nose,
        'BodyTemp': np.round(body_temp, 1),
        'Nausea': pd.Categorical(np.where(rng.uniform(size=n) < nausea_p, 'Yes', 'No'),
                                 categories=YES_NO_LEVELS),
    })


@pytest.fixture
def raw_symptom_data():
    """Raw table in the source layout, before cleaning."""
    rng = np.random.RandomState(7)
    n = 200
    return pd.DataFrame({
        'Unique.Visit': [f'{i}_1' for i in range(n)],
        'DxName1': rng.choice(['J11.1', 'J06.9'], size=n),
        'ActivityLevel': rng.randint(0, 11, size=n),
        'TransScore1': rng.randint(0, 5, size=n),
        'TotalSymp1': rng.randint(0, 20, size=n),
        'RapidFluA': rng.choice(['Presumptive Negative', 'Presumptive Positive'], size=n),
        'PCRFluB': rng.choice(['Not Done', 'Positive'], size=n),
        'Weakness': rng.choice(SEVERITY_LEVELS, size=n),
        'WeaknessYN': rng.choice(YES_NO_LEVELS, size=n),
        'CoughIntensity': rng.choice(SEVERITY_LEVELS, size=n),
        'CoughYN': rng.choice(YES_NO_LEVELS, size=n),
        'CoughYN2': rng.choice(YES_NO_LEVELS, size=n),
        'Myalgia': rng.choice(SEVERITY_LEVELS, size=n),
        'MyalgiaYN': rng.choice(YES_NO_LEVELS, size=n),
        'Headache': rng.choice(YES_NO_LEVELS, size=n, p=[0.45, 0.55]),
        'Hearing': rng.choice(YES_NO_LEVELS, size=n, p=[0.97, 0.03]),
        'Nausea': rng.choice(YES_NO_LEVELS, size=n, p=[0.6, 0.4]),
        'BodyTemp': np.round(rng.normal(99.0, 1.0, size=n), 1),
    })


@pytest.fixture
def temp_directory():
    """Create temporary directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture(scope="session")
def dask_client():
    """In-process dask client shared by the tuning tests."""
    client = Client(processes=False, n_workers=1, threads_per_worker=2, dashboard_address=':0')
    yield client
    client.close()


@pytest.fixture
def sample_config():
    """Small configuration for fast comparisons."""
    return {
        'random_seed': 123,
        'data': {
            'continuous_outcome': 'BodyTemp',
            'categorical_outcome': 'Nausea',
        },
        'cleaning': {
            'min_category_count': 20,
        },
        'split': {'prop': 0.7, 'strata': 'BodyTemp'},
        'resampling': {'v': 3, 'repeats': 1, 'strata': 'BodyTemp'},
        'tuning': {
            'n_workers': 2,
            'fit_timeout_sec': 60,
            'metrics': {
                'regression': ['rmse', 'rsq'],
                'classification': ['roc_auc', 'accuracy'],
            },
        },
        'models': {
            'null': {'family': 'null'},
            'linear': {'family': 'linear'},
            'lasso': {
                'family': 'lasso',
                'tune': ['penalty'],
                'grid': {'type': 'values',
                         'values': {'penalty': {'log10_from': -3, 'log10_to': 0, 'length': 4}}},
            },
            'tree': {
                'family': 'decision_tree',
                'tune': ['cost_complexity', 'tree_depth'],
                'grid': {'type': 'regular', 'levels': 2},
            },
            'forest': {
                'family': 'random_forest',
                'fixed': {'trees': 20},
                'tune': ['mtry', 'min_n'],
                'grid': {'type': 'latin_hypercube', 'size': 3},
            },
        },
        'mlflow': {
            'enabled': False,
        },
        'reporting': {'plots': False},
    }
