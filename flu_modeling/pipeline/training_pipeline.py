"""
Main Training Pipeline
"""

from __future__ import annotations

import warnings
# Suppress MLflow deprecation warnings from their internal code
warnings.filterwarnings("ignore", message=".*artifact_path.*deprecated.*", category=FutureWarning)
warnings.filterwarnings("ignore", message=".*artifact_path.*deprecated.*", category=UserWarning)

from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
import yaml
import logging
import argparse

# Dask for distributed processing
import dask.dataframe as dd
from dask.distributed import Client
from dask.diagnostics.progress import ProgressBar

from flu_modeling.pipeline.comparison import ComparisonResult, ModelComparison
from flu_modeling.pipeline.metrics import CLASSIFICATION, REGRESSION
from flu_modeling.pipeline.preprocessing import DataCleaner, SymptomDataValidator, YES_NO_LEVELS
from flu_modeling.pipeline.splitting import DataSplit, ResampleSet, initial_split, vfold_cv
from flu_modeling.pipeline.tuning import TuneControl
from flu_modeling.reporting.diagnostics import PlotTheme, save_family_plots
from flu_modeling.utils.experiment_tracking import ExperimentTracker
from flu_modeling.utils.model_utils import ModelComparator, ModelEvaluator

logger = logging.getLogger(__name__)


class SymptomModelingPipeline:
    """Clean the symptom table, then compare model families for each outcome."""

    def __init__(self, config: Dict):
        self.config = config
        self.seed = config.get("random_seed", 123)
        self.cleaner = DataCleaner.from_config(config)
        self.results: Dict[str, ComparisonResult] = {}
        self.split: Optional[DataSplit] = None
        self.resamples: Optional[ResampleSet] = None

        # trackers & helpers
        self.experiment_tracker = ExperimentTracker(config.get("mlflow", {}))
        self.evaluator = ModelEvaluator()

    # ---------- Data ----------
    def load_data(self, data_path: str) -> pd.DataFrame:
        """Load parquet (file/dir) or CSV with Dask, falling back to pandas."""
        logger.info(f"Loading data from {data_path} using Dask")
        p = Path(data_path)

        try:
            if p.suffix.lower() == ".csv":
                ddf = dd.read_csv(p, assume_missing=True)
            else:
                ddf = dd.read_parquet(p)
            logger.info(f"Dask DataFrame partitions: {ddf.npartitions}")

            with ProgressBar():
                df = ddf.compute()
            df = df.reset_index(drop=True)
        except Exception as e:
            logger.warning(f"Dask loading failed: {e}. Falling back to pandas.")
            if p.suffix.lower() == ".csv":
                df = pd.read_csv(p)
            else:
                df = pd.read_parquet(p)

        logger.info(f"Loaded data shape: {df.shape}")
        return df

    def validate_data(self, df: pd.DataFrame) -> Dict[str, List[str]]:
        logger.info("Validating data quality...")
        validator = SymptomDataValidator()
        binary = [c for c in df.columns
                  if df[c].dropna().astype(str).isin(YES_NO_LEVELS).all() and df[c].notna().any()]
        validator.setup_symptom_rules(binary)
        violations = validator.validate(df)
        if violations:
            for feature, issues in violations.items():
                logger.warning(f"Data quality issue in {feature}: {'; '.join(issues)}")
        else:
            logger.info("Data validation passed")
        return violations

    def clean_data(self, df: pd.DataFrame, output_dir: Optional[str] = None) -> pd.DataFrame:
        """Clean the raw table and persist it as parquet under ``output_dir``."""
        cleaned = self.cleaner.clean(df)
        if output_dir is not None:
            path = Path(output_dir) / self.config.get("data", {}).get("cleaned_file", "cleaned_symptoms.parquet")
            path.parent.mkdir(parents=True, exist_ok=True)
            cleaned.to_parquet(path, index=False)
            logger.info(f"Cleaned data written to {path}")
        return cleaned

    # ---------- Splits ----------
    def create_splits(self, df: pd.DataFrame):
        split_cfg = self.config.get("split", {})
        resample_cfg = self.config.get("resampling", {})
        strata = split_cfg.get("strata", self.config.get("data", {}).get("continuous_outcome"))
        self.split = initial_split(df, prop=split_cfg.get("prop", 0.7), strata=strata, seed=self.seed,
                                   breaks=split_cfg.get("breaks", 4))
        self.resamples = vfold_cv(
            self.split,
            v=resample_cfg.get("v", 5),
            repeats=resample_cfg.get("repeats", 5),
            strata=resample_cfg.get("strata", strata),
            seed=self.seed,
            breaks=resample_cfg.get("breaks", 4),
        )
        return self.split, self.resamples

    def outcomes(self) -> Dict[str, str]:
        """Outcome column -> mode."""
        data_cfg = self.config.get("data", {})
        outcomes = {}
        if data_cfg.get("continuous_outcome"):
            outcomes[data_cfg["continuous_outcome"]] = REGRESSION
        if data_cfg.get("categorical_outcome"):
            outcomes[data_cfg["categorical_outcome"]] = CLASSIFICATION
        if not outcomes:
            raise ValueError("No outcome configured; set data.continuous_outcome and/or data.categorical_outcome")
        return outcomes

    # ---------- Modeling ----------
    def compare_models(self, client: Optional[Client] = None) -> Dict[str, ComparisonResult]:
        control = TuneControl.from_config(self.config)
        comparison = ModelComparison(self.config, tracker=self.experiment_tracker, client=client)
        for outcome, mode in self.outcomes().items():
            logger.info(f"Comparing models for {outcome} ({mode})")
            self.results[outcome] = comparison.run(self.split, self.resamples, outcome, mode, control=control)
        return self.results

    def final_report(self) -> Dict[str, Dict[str, Dict[str, float]]]:
        """Detailed held-out metrics of every refit model, keyed by outcome then model."""
        report = {}
        for outcome, result in self.results.items():
            comparator = ModelComparator()
            for name, family in result.families.items():
                if family.final is None:
                    continue
                metrics = self.evaluator.evaluate_predictions(family.final.predictions,
                                                              family.final.fitted.positive_class)
                comparator.add_model(name, metrics)
            primary = result.metric_names[0]
            logger.info(f"Held-out comparison for {outcome}:\n{comparator.compare_models(primary)}")
            logger.info(f"Best held-out {primary} for {outcome}: {comparator.get_best_model(primary)}")
            report[outcome] = comparator.results
        return report

    # ---------- Artifacts ----------
    def save_artifacts(self, output_dir: str, report: Dict):
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        theme = PlotTheme.from_config(self.config.get("reporting", {}))
        for outcome, result in self.results.items():
            result.save(output_dir)
            if self.config.get("reporting", {}).get("plots", True):
                save_family_plots(result, out / "plots", theme)

        (out / "final_metrics.yaml").write_text(
            yaml.safe_dump({o: {m: {k: (None if v != v else float(v)) for k, v in metrics.items()}
                                for m, metrics in models.items()}
                            for o, models in report.items()}, sort_keys=False),
            encoding="utf-8",
        )
        (out / "training_config.yaml").write_text(yaml.safe_dump(self.config, sort_keys=False), encoding="utf-8")

        try:
            self.experiment_tracker.log_dict(self.config, "config.yaml")
            for outcome, result in self.results.items():
                self.experiment_tracker.log_dict(result.to_dict(), f"{outcome}_model_summaries.yaml")
        except Exception as e:
            logger.warning(f"Failed to log artifacts to MLflow: {e}")
        logger.info("Artifacts saved successfully")

    # ---------- Orchestration ----------
    def run_pipeline(self, data_path: str, output_dir: str) -> Dict[str, ComparisonResult]:
        logger.info("Starting symptom model comparison pipeline...")
        run_name = self.config.get("mlflow", {}).get("run_name", "flu_symptom_models")

        dask_config = self.config.get("processing", {}).get("dask_config", {})
        client = Client(
            processes=dask_config.get("processes", False),
            threads_per_worker=self.config.get("tuning", {}).get("n_workers", 2),
            n_workers=1,
            memory_limit=dask_config.get("memory_limit", "2GB"),
            dashboard_address=':0',
        )
        logger.info("Dask client initialized")

        try:
            with self.experiment_tracker.start_run(run_name):
                self.experiment_tracker.log_params(self.config)

                df = self.load_data(data_path)
                self.validate_data(df)
                cleaned = self.clean_data(df, output_dir)
                self.create_splits(cleaned)

                self.compare_models(client=client)
                report = self.final_report()
                self.save_artifacts(output_dir, report)
                self.experiment_tracker.log_artifacts(output_dir)

                for outcome, result in self.results.items():
                    best = result.best_model()
                    family = result.families.get(best) if best else None
                    if family is not None and family.final is not None:
                        self.experiment_tracker.log_model(family.final.fitted.model.estimator,
                                                          f"{outcome}_{best}")

                logger.info("Pipeline completed successfully!")
                return self.results
        finally:
            client.close()
            logger.info("Dask client closed")


# =====================
# CLI entrypoint
# =====================

def main():
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="Compare models for the flu symptom outcomes")
    parser.add_argument("--config", type=str, required=True, help="Path to training configuration file")
    parser.add_argument("--data", type=str, required=True, help="Path to raw symptom data (parquet or CSV)")
    parser.add_argument("--output", type=str, default="./models", help="Output directory for artifacts")
    args = parser.parse_args()

    with open(args.config, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f)

    np.random.seed(config.get("random_seed", 123))

    pipeline = SymptomModelingPipeline(config)
    results = pipeline.run_pipeline(args.data, args.output)

    for outcome, result in results.items():
        print(f"\n{outcome}:")
        print(result.summary_table().to_string(index=False))
    print("Training completed! Artifacts in:", args.output)


if __name__ == "__main__":
    main()
