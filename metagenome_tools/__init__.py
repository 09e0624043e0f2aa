# metagenome_tools/__init__.py

from .errors import (
    ScreeningError,
    InvalidGroupingError,
    InvalidCovariateError,
    EmptyInputError,
    DimensionMismatchError
)

from .config import (
    ScreeningConfig,
    default_config,
    load_config
)

from .parser import (
    load_abundance_table,
    load_metadata,
    align_metadata,
    align_samples,
    join_abundance_with_metadata,
    relative_abundance,
    normalize_log_std,
    filter_by_abundance,
    filter_by_prevalence,
    rarefy
)

from .stats import (
    TestResult,
    OrdinationResult,
    screen_associations,
    fdr_correction,
    results_to_dataframe,
    differential_abundance_analysis,
    calculate_beta_diversity,
    ordinate
)

from .classify import (
    LassoCVResult,
    knn_validate_clusters,
    lasso_cross_validation
)

from .viz import (
    plot_ordination,
    plot_feature_boxplots,
    plot_relative_abundance_heatmap,
    plot_roc_curve
)

__version__ = "0.1.0"
