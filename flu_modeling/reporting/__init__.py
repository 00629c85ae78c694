"""Diagnostic plots."""

from .diagnostics import PlotTheme, save_family_plots

__all__ = ['PlotTheme', 'save_family_plots']
