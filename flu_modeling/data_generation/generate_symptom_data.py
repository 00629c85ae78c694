"""
Synthetic Flu Symptom Data Generator

Generates a raw visit-level symptom table with the same layout as the
clinical source data: Yes/No symptom flags, severity-graded symptoms with
their redundant Yes/No duplicates, body temperature, diagnosis codes,
activity level, lab flu tests and derived score columns. Used for demos
and tests; no real patient data is involved.
"""

import pandas as pd
import numpy as np
import argparse
import yaml
from pathlib import Path
from typing import Dict, List, Optional
from faker import Faker
import logging

logger = logging.getLogger(__name__)

BINARY_SYMPTOMS = [
    'SwollenLymphNodes', 'ChestCongestion', 'ChillsSweats', 'NasalCongestion', 'Sneeze',
    'Fatigue', 'SubjectiveFever', 'Headache', 'RunnyNose', 'AbPain', 'ChestPain', 'Diarrhea',
    'EyePn', 'Insomnia', 'ItchyEye', 'Nausea', 'EarPn', 'Hearing', 'Pharyngitis', 'Breathless',
    'ToothPn', 'Vision', 'Vomit', 'Wheeze',
]

# Approximate prevalence of each symptom among flu-like-illness visits
SYMPTOM_PREVALENCE = {
    'SwollenLymphNodes': 0.43, 'ChestCongestion': 0.54, 'ChillsSweats': 0.82, 'NasalCongestion': 0.77,
    'Sneeze': 0.56, 'Fatigue': 0.92, 'SubjectiveFever': 0.77, 'Headache': 0.86, 'RunnyNose': 0.72,
    'AbPain': 0.13, 'ChestPain': 0.31, 'Diarrhea': 0.14, 'EyePn': 0.13, 'Insomnia': 0.57,
    'ItchyEye': 0.27, 'Nausea': 0.35, 'EarPn': 0.22, 'Hearing': 0.04, 'Pharyngitis': 0.83,
    'Breathless': 0.41, 'ToothPn': 0.23, 'Vision': 0.03, 'Vomit': 0.11, 'Wheeze': 0.45,
}

SEVERITY_SYMPTOMS = {
    'Weakness': [0.07, 0.30, 0.46, 0.17],
    'CoughIntensity': [0.07, 0.21, 0.49, 0.23],
    'Myalgia': [0.11, 0.29, 0.45, 0.15],
}

DIAGNOSIS_CODES = ['J11.1', 'J10.1', 'J06.9', 'J02.9', 'R50.9', 'B34.9', 'J20.9', 'R05']


class SymptomDataGenerator:
    """Generate synthetic raw flu symptom visits."""

    def __init__(self, seed: int = 123, missing_rate: float = 0.005):
        """Initialize the generator.

        Args:
            seed: Random seed for reproducibility
            missing_rate: Share of missing values injected into a few symptom columns
        """
        self.seed = seed
        self.missing_rate = missing_rate
        self.rng = np.random.RandomState(seed)
        self.fake = Faker()
        self.fake.seed_instance(seed)

    def _yes_no(self, p: np.ndarray) -> np.ndarray:
        return np.where(self.rng.uniform(size=len(p)) < p, 'Yes', 'No')

    def generate_visit_ids(self, n: int) -> List[str]:
        """Unique visit identifiers of the form '<subject>_<visit>'."""
        if n < 0:
            raise ValueError(f"Number of visits must be non-negative, got {n}")
        width = max(5, len(str(n)))
        return [f"{i + 1:0{width}d}_{self.fake.random_digit()}" for i in range(n)]

    def generate_dataset(self, n_subjects: int = 730) -> pd.DataFrame:
        """
        Generate one row per visit.

        Args:
            n_subjects: Number of visits

        Returns:
            Raw symptom table
        """
        n = n_subjects
        data: Dict[str, np.ndarray] = {}
        data['Unique.Visit'] = np.array(self.generate_visit_ids(n))
        for i in range(1, 6):
            data[f'DxName{i}'] = self.rng.choice(DIAGNOSIS_CODES + [None], size=n)

        activity = self.rng.randint(0, 11, size=n)
        data['ActivityLevel'] = activity
        data['ActivityLevelF'] = activity.astype(str)

        # Latent illness severity drives fever-related symptoms and temperature
        severity = self.rng.normal(size=n)
        for symptom in BINARY_SYMPTOMS:
            p = np.full(n, SYMPTOM_PREVALENCE[symptom])
            if symptom in ('ChillsSweats', 'SubjectiveFever', 'Fatigue'):
                p = np.clip(p + 0.08 * severity, 0.01, 0.99)
            data[symptom] = self._yes_no(p)

        nausea = data['Nausea'] == 'Yes'
        for symptom, shift in (('Vomit', 0.25), ('AbPain', 0.15), ('Diarrhea', 0.10)):
            p = np.clip(SYMPTOM_PREVALENCE[symptom] + shift * nausea, 0.01, 0.99)
            data[symptom] = self._yes_no(p)

        levels = ['None', 'Mild', 'Moderate', 'Severe']
        for symptom, probs in SEVERITY_SYMPTOMS.items():
            data[symptom] = self.rng.choice(levels, size=n, p=probs)
        data['WeaknessYN'] = np.where(data['Weakness'] == 'None', 'No', 'Yes')
        data['CoughYN'] = np.where(data['CoughIntensity'] == 'None', 'No', 'Yes')
        data['CoughYN2'] = data['CoughYN'].copy()
        data['MyalgiaYN'] = np.where(data['Myalgia'] == 'None', 'No', 'Yes')

        fever = (data['SubjectiveFever'] == 'Yes').astype(float)
        chills = (data['ChillsSweats'] == 'Yes').astype(float)
        body_temp = 98.3 + 0.35 * fever + 0.25 * chills + 0.3 * np.clip(severity, 0, None)
        body_temp += self.rng.gamma(shape=1.2, scale=0.45, size=n)
        data['BodyTemp'] = np.round(np.clip(body_temp, 97.2, 103.1), 1)

        for test in ('RapidFluA', 'RapidFluB', 'PCRFluA', 'PCRFluB'):
            data[test] = self.rng.choice(['Presumptive Negative', 'Presumptive Positive', 'Not Done'],
                                         size=n, p=[0.6, 0.25, 0.15])

        df = pd.DataFrame(data)
        symptom_yes = (df[BINARY_SYMPTOMS] == 'Yes').sum(axis=1)
        df['TransScore1'] = (df[['CoughYN', 'Sneeze', 'RunnyNose', 'NasalCongestion']] == 'Yes').sum(axis=1)
        df['TransScore1F'] = df['TransScore1'].astype(str)
        df['ImpactScore'] = symptom_yes + (df['Weakness'] != 'None').astype(int)
        df['ImpactScoreF'] = df['ImpactScore'].astype(str)
        df['TotalSymp1'] = df['TransScore1'] + df['ImpactScore']
        df['TotalSymp1F'] = df['TotalSymp1'].astype(str)

        df = self._inject_missing(df, ['Headache', 'Insomnia', 'Myalgia'])
        logger.info(f"Generated {len(df)} visits with {df.shape[1]} columns "
                    f"(Nausea prevalence {nausea.mean():.3f})")
        return df

    def _inject_missing(self, df: pd.DataFrame, columns: List[str]) -> pd.DataFrame:
        for col in columns:
            mask = self.rng.uniform(size=len(df)) < self.missing_rate
            df.loc[mask, col] = None
        return df


def main():
    """Main function for command-line usage."""
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="Generate synthetic flu symptom data")
    parser.add_argument("--n_subjects", type=int, default=730, help="Number of visits to generate")
    parser.add_argument("--output_dir", type=str, default="./data/raw", help="Output directory")
    parser.add_argument("--seed", type=int, default=123, help="Random seed")
    parser.add_argument("--missing_rate", type=float, default=0.005,
                        help="Share of missing values injected into some symptom columns")
    args = parser.parse_args()

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    output_path = output_dir / "symptoms_raw.parquet"

    generator = SymptomDataGenerator(seed=args.seed, missing_rate=args.missing_rate)
    df = generator.generate_dataset(n_subjects=args.n_subjects)
    df.to_parquet(output_path, index=False, engine='pyarrow')
    logger.info(f"Data saved to {output_path}")

    summary = {
        'total_records': len(df),
        'features': list(df.columns),
        'body_temp': {'mean': float(df['BodyTemp'].mean()), 'sd': float(df['BodyTemp'].std())},
        'nausea_prevalence': float((df['Nausea'] == 'Yes').mean()),
        'missing_values': {k: int(v) for k, v in df.isnull().sum().items() if v > 0},
        'seed': generator.seed,
    }
    summary_path = output_dir / "data_summary.yaml"
    with open(summary_path, 'w') as f:
        yaml.dump(summary, f, default_flow_style=False)
    logger.info(f"Summary saved to {summary_path}")


if __name__ == "__main__":
    main()
