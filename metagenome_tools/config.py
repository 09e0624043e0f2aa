# metagenome_tools/config.py

import logging
import os
from dataclasses import dataclass, fields

import yaml

logger = logging.getLogger(__name__)

TEST_VARIANTS = ('two_group', 'correlation')

DEFAULT_ORDINATION = {
    'metric': 'braycurtis',
    'method': 'PCoA',
    'n_components': 2,
}

DEFAULT_CLASSIFICATION = {
    'n_neighbors': 5,
    'n_folds': 5,
    'n_repeats': 3,
    'C': 1.0,
    'seed': 42,
}


@dataclass(frozen=True)
class ScreeningConfig:
    """
    Parameters of one association screening run.

    Attributes:
    -----------
    abundance_cutoff : float
        A feature is tested only if at least one sample reaches this value
    alpha : float
        Features with an adjusted p-value strictly below alpha are reported
    test_variant : str
        'two_group' (Mann-Whitney U) or 'correlation' (Spearman)
    n_workers : int
        Number of worker processes for the per-feature tests
    require_features : bool
        Raise EmptyInputError instead of returning no results when nothing
        passes the abundance filter
    """
    abundance_cutoff: float = 1e-3
    alpha: float = 0.05
    test_variant: str = 'two_group'
    n_workers: int = 1
    require_features: bool = False

    def __post_init__(self):
        if self.abundance_cutoff < 0:
            raise ValueError(f"abundance_cutoff must be non-negative, got {self.abundance_cutoff}")
        if not 0 < self.alpha <= 1:
            raise ValueError(f"alpha must be in (0, 1], got {self.alpha}")
        if self.test_variant not in TEST_VARIANTS:
            raise ValueError(
                f"Unsupported test variant: {self.test_variant}. Must be one of {list(TEST_VARIANTS)}"
            )
        if self.n_workers < 1:
            raise ValueError(f"n_workers must be at least 1, got {self.n_workers}")


def default_config():
    """Parameters used when no configuration file is given."""
    return {
        'screening': ScreeningConfig(),
        'ordination': dict(DEFAULT_ORDINATION),
        'classification': dict(DEFAULT_CLASSIFICATION),
    }


def load_config(config_file):
    """
    Load analysis parameters from a YAML file.

    Parameters:
    -----------
    config_file : str
        Path to a YAML file with optional 'screening', 'ordination' and
        'classification' sections

    Returns:
    --------
    dict
        {'screening': ScreeningConfig, 'ordination': dict, 'classification': dict}
    """
    if not os.path.exists(config_file):
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    with open(config_file, 'r') as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Configuration file {config_file} must contain a mapping")

    screening = raw.get('screening') or {}
    known = {field.name for field in fields(ScreeningConfig)}
    unknown = set(screening) - known
    if unknown:
        raise ValueError(f"Unknown screening options in {config_file}: {sorted(unknown)}")

    ordination = dict(DEFAULT_ORDINATION)
    ordination.update(raw.get('ordination') or {})

    classification = dict(DEFAULT_CLASSIFICATION)
    classification.update(raw.get('classification') or {})

    logger.debug("Loaded configuration from %s", config_file)

    return {
        'screening': ScreeningConfig(**screening),
        'ordination': ordination,
        'classification': classification,
    }
