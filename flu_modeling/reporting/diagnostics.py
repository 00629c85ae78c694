"""
Diagnostic plots for the final fits and the tuning results.

Every function takes an explicit ``PlotTheme``; nothing touches matplotlib's
global style.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from sklearn.metrics import roc_curve

logger = logging.getLogger(__name__)


@dataclass
class PlotTheme:
    figsize: Tuple[float, float] = (6.0, 5.0)
    dpi: int = 150
    point_color: str = "#1f77b4"
    line_color: str = "#d62728"
    alpha: float = 0.6
    grid: bool = True

    @classmethod
    def from_config(cls, config: Dict) -> 'PlotTheme':
        theme = config.get("theme", {})
        return cls(
            figsize=tuple(theme.get("figsize", cls.figsize)),
            dpi=theme.get("dpi", cls.dpi),
            point_color=theme.get("point_color", cls.point_color),
            line_color=theme.get("line_color", cls.line_color),
            alpha=theme.get("alpha", cls.alpha),
            grid=theme.get("grid", cls.grid),
        )

    def new_figure(self):
        fig, ax = plt.subplots(figsize=self.figsize)
        ax.grid(self.grid, alpha=0.3)
        return fig, ax


def plot_predicted_vs_observed(predictions: pd.DataFrame, theme: PlotTheme, title: str = ""):
    """Scatter of observed against predicted values with the identity line."""
    fig, ax = theme.new_figure()
    ax.scatter(predictions["truth"], predictions[".pred"], color=theme.point_color, alpha=theme.alpha, s=12)
    lo = float(min(predictions["truth"].min(), predictions[".pred"].min()))
    hi = float(max(predictions["truth"].max(), predictions[".pred"].max()))
    ax.plot([lo, hi], [lo, hi], color=theme.line_color, linestyle="--", linewidth=1)
    ax.set_xlabel("Observed")
    ax.set_ylabel("Predicted")
    ax.set_title(title)
    return fig


def plot_residuals(predictions: pd.DataFrame, theme: PlotTheme, title: str = ""):
    """Residuals (observed - predicted) against the predicted values."""
    fig, ax = theme.new_figure()
    ax.scatter(predictions[".pred"], predictions[".resid"], color=theme.point_color, alpha=theme.alpha, s=12)
    ax.axhline(0.0, color=theme.line_color, linestyle="--", linewidth=1)
    ax.set_xlabel("Predicted")
    ax.set_ylabel("Residual")
    ax.set_title(title)
    return fig


def plot_roc_curve(predictions: pd.DataFrame, positive_class, theme: PlotTheme, title: str = ""):
    fig, ax = theme.new_figure()
    truth = (predictions["truth"] == positive_class).astype(int)
    if truth.nunique() > 1:
        fpr, tpr, _ = roc_curve(truth, predictions[".pred_prob"])
        ax.plot(fpr, tpr, color=theme.point_color)
    else:
        logger.warning(f"ROC curve undefined for '{title}': one class in the test data")
    ax.plot([0, 1], [0, 1], color=theme.line_color, linestyle="--", linewidth=1)
    ax.set_xlabel("1 - Specificity")
    ax.set_ylabel("Sensitivity")
    ax.set_title(title)
    return fig


def plot_tuning_curve(summary: pd.DataFrame, parameter: str, metric: str, theme: PlotTheme,
                      title: str = "", log_scale: bool = False):
    """
    Mean resampling metric (with one standard error) against one parameter.

    Args:
        summary: Output of ``TuneResults.collect_metrics()``
        parameter: Parameter plotted on the x axis
        metric: Metric plotted on the y axis
        theme: Plot theme
        title: Figure title
        log_scale: Use a log10 x axis
    """
    fig, ax = theme.new_figure()
    data = summary[summary["metric"] == metric].sort_values(parameter)
    ax.errorbar(data[parameter], data["mean"], yerr=data["std_err"].fillna(0.0),
                fmt="o", color=theme.point_color, alpha=theme.alpha, capsize=2)
    if log_scale:
        ax.set_xscale("log")
    ax.set_xlabel(parameter)
    ax.set_ylabel(metric)
    ax.set_title(title)
    return fig


def _save(fig, path: Path, theme: PlotTheme) -> Path:
    fig.tight_layout()
    fig.savefig(path, dpi=theme.dpi)
    plt.close(fig)
    return path


def save_family_plots(result, out_dir: Path, theme: Optional[PlotTheme] = None) -> List[Path]:
    """Write the diagnostic plots of every refit family in a ``ComparisonResult``."""
    theme = theme or PlotTheme()
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    written = []
    for name, family in result.families.items():
        prefix = f"{result.outcome}_{name}"
        if family.final is not None:
            predictions = family.final.predictions
            if ".pred" in predictions.columns:
                written.append(_save(plot_predicted_vs_observed(predictions, theme, f"{name}: {result.outcome}"),
                                     out_dir / f"{prefix}_predicted_vs_observed.png", theme))
                written.append(_save(plot_residuals(predictions, theme, f"{name}: residuals"),
                                     out_dir / f"{prefix}_residuals.png", theme))
            else:
                written.append(_save(plot_roc_curve(predictions, family.final.fitted.positive_class,
                                                    theme, f"{name}: {result.outcome}"),
                                     out_dir / f"{prefix}_roc.png", theme))
        if family.tuning is not None and family.tuning.param_names:
            summary = family.tuning.collect_metrics()
            metric = result.metric_names[0]
            for param in family.tuning.parameters:
                if param.name not in summary.columns or summary.empty:
                    continue
                fig = plot_tuning_curve(summary, param.name, metric, theme, f"{name}: {param.name}",
                                        log_scale=param.transform == "log10")
                written.append(_save(fig, out_dir / f"{prefix}_tuning_{param.name}.png", theme))
    logger.info(f"Saved {len(written)} diagnostic plots to {out_dir}")
    return written
