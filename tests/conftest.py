"""Shared pytest fixtures for all test modules."""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest


@pytest.fixture
def small_abundance():
    """Three features x six samples: one separated, one constant, one tied."""
    samples = ["S1", "S2", "S3", "S4", "S5", "S6"]
    return pd.DataFrame(
        {
            "S1": [1, 5, 3],
            "S2": [2, 5, 1],
            "S3": [3, 5, 2],
            "S4": [10, 5, 2],
            "S5": [11, 5, 3],
            "S6": [12, 5, 1],
        },
        index=["feature_1", "feature_2", "feature_3"],
    )[samples].astype(float)


@pytest.fixture
def small_groups():
    """Group labels for small_abundance, positional."""
    return ["A", "A", "A", "B", "B", "B"]


@pytest.fixture
def small_metadata(small_groups):
    """Metadata DataFrame for small_abundance with a group and an age column."""
    return pd.DataFrame(
        {
            "Group": small_groups,
            "Age": [20, 30, 40, 50, 60, 70],
            "Site": ["nose", "gut", "skin", "nose", "gut", "skin"],
        },
        index=pd.Index(["S1", "S2", "S3", "S4", "S5", "S6"], name="SampleID"),
    )


@pytest.fixture
def synthetic_dataset():
    """
    30 features x 20 samples of abundances with two groups.

    Features tax_0 .. tax_4 are much more abundant in group 'case'.
    """
    rng = np.random.default_rng(0)
    n_per_group = 10
    n_features = 30
    informative = 5

    control = rng.uniform(0.0, 1.0, size=(n_features, n_per_group))
    case = rng.uniform(0.0, 1.0, size=(n_features, n_per_group))
    case[:informative] += 5.0

    values = np.hstack([control, case])
    samples = [f"sample_{i:02d}" for i in range(2 * n_per_group)]
    features = [f"tax_{i}" for i in range(n_features)]
    abundance = pd.DataFrame(values, index=features, columns=samples)

    metadata = pd.DataFrame(
        {
            "Status": ["control"] * n_per_group + ["case"] * n_per_group,
            "Age": np.linspace(20, 80, 2 * n_per_group),
        },
        index=pd.Index(samples, name="SampleID"),
    )
    return abundance, metadata, features[:informative]


@pytest.fixture
def classification_dataset():
    """40 samples with groups separated on three dominant features."""
    rng = np.random.default_rng(1)
    n_per_group = 20
    n_features = 15

    healthy = rng.uniform(0.0, 10.0, size=(n_features, n_per_group))
    disease = rng.uniform(0.0, 10.0, size=(n_features, n_per_group))
    healthy[:3] += 60.0
    disease[:3] = rng.uniform(0.0, 1.0, size=(3, n_per_group))

    values = np.hstack([healthy, disease])
    samples = [f"S{i:02d}" for i in range(2 * n_per_group)]
    abundance = pd.DataFrame(values, index=[f"taxon_{i}" for i in range(n_features)], columns=samples)
    abundance = abundance / abundance.sum(axis=0)

    labels = pd.Series(["healthy"] * n_per_group + ["disease"] * n_per_group, index=samples)
    return abundance, labels


@pytest.fixture
def input_files(tmp_path, synthetic_dataset):
    """Write the synthetic dataset to an abundance TSV and a metadata CSV."""
    abundance, metadata, _ = synthetic_dataset
    abundance_file = tmp_path / "abundance.tsv"
    metadata_file = tmp_path / "metadata.csv"
    abundance.to_csv(abundance_file, sep="\t")
    metadata.reset_index().to_csv(metadata_file, index=False)
    return str(abundance_file), str(metadata_file)
