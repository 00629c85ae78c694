"""Synthetic data generation."""

from .generate_symptom_data import SymptomDataGenerator

__all__ = ['SymptomDataGenerator']
