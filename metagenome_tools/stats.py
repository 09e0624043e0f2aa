# metagenome_tools/stats.py

import concurrent.futures
import logging
from dataclasses import dataclass, replace

import numpy as np
import pandas as pd
import scipy.stats as stats
from scipy.spatial.distance import pdist, squareform
from skbio import DistanceMatrix
from skbio.stats.ordination import pcoa
from sklearn.decomposition import PCA
from statsmodels.stats.multitest import multipletests

from .config import ScreeningConfig
from .errors import (
    EmptyInputError,
    InvalidCovariateError,
    InvalidGroupingError,
)
from .parser import align_samples, filter_by_abundance

logger = logging.getLogger(__name__)

TEST_NAMES = {
    'two_group': 'Mann-Whitney U',
    'correlation': 'Spearman correlation',
}


@dataclass(frozen=True)
class TestResult:
    """
    Outcome of one feature's association test.

    Fields
    ------
    feature_id : str
        Feature (taxon) identifier from the abundance table index.
    test : str
        Name of the test that produced raw_p.
    statistic : float
        Mann-Whitney U for the first group, or Spearman's rho. NaN when the
        feature is constant and the correlation is undefined.
    raw_p : float
        Uncorrected p-value.
    adjusted_p : float
        Benjamini-Hochberg adjusted p-value over all features tested in the run.
    """
    __test__ = False

    feature_id: str
    test: str
    statistic: float
    raw_p: float
    adjusted_p: float


@dataclass(frozen=True)
class OrdinationResult:
    """Sample coordinates on the leading axes and the variance each axis explains."""
    coordinates: pd.DataFrame
    proportion_explained: pd.Series
    method: str


def _rank_sum_test(job):
    group_a, group_b = job
    pooled = np.concatenate([group_a, group_b])
    # No ranking information at all: every value tied
    if np.all(pooled == pooled[0]):
        return len(group_a) * len(group_b) / 2.0, 1.0
    stat, pval = stats.mannwhitneyu(group_a, group_b, alternative='two-sided', method='auto')
    return float(stat), float(pval)


def _spearman_test(job):
    values, covariate = job
    if np.all(values == values[0]):
        return float('nan'), 1.0
    rho, pval = stats.spearmanr(values, covariate)
    return float(rho), float(pval)


def _run_tests(test_func, jobs, n_workers=1):
    """Apply test_func to every job, in order, optionally across worker processes."""
    if n_workers > 1 and len(jobs) > 1:
        chunksize = max(1, len(jobs) // (n_workers * 4))
        logger.info("Testing %d features with %d workers", len(jobs), n_workers)
        with concurrent.futures.ProcessPoolExecutor(max_workers=n_workers) as executor:
            return list(executor.map(test_func, jobs, chunksize=chunksize))
    return [test_func(job) for job in jobs]


def fdr_correction(pvalues):
    """
    Benjamini-Hochberg adjusted p-values, returned in input order.

    Parameters:
    -----------
    pvalues : sequence of float
        Raw p-values in [0, 1]

    Returns:
    --------
    numpy.ndarray
        Adjusted p-values, each clipped to 1 and monotone in the raw p-value
    """
    pvals = np.asarray(pvalues, dtype=float)
    if len(pvals) == 0:
        return pvals
    _, corrected, _, _ = multipletests(pvals, method='fdr_bh')
    return corrected


def _sample_values(abundance_df, metadata, variable):
    """Return the grouping/covariate as a Series indexed like the abundance columns."""
    if isinstance(metadata, pd.DataFrame):
        if variable is None:
            raise ValueError("A metadata variable is required when metadata is a DataFrame")
        if variable not in metadata.columns:
            raise ValueError(f"Variable '{variable}' not found in metadata")
        metadata = metadata[variable]

    return align_samples(abundance_df.columns, metadata)


def _check_grouping(values):
    """Return the group labels of labelled samples and their two sorted levels."""
    labels = values.dropna()
    if len(labels) < len(values):
        logger.warning("Excluding %d samples with no group label", len(values) - len(labels))

    levels = sorted(labels.unique(), key=str)
    if len(levels) != 2:
        raise InvalidGroupingError(
            f"Two-group test needs exactly 2 group levels, found {len(levels)}: {levels}"
        )

    sizes = [(labels == level).sum() for level in levels]
    if min(sizes) < 2:
        logger.warning("Group sizes %d/%d: rank-sum p-values will be uninformative", *sizes)
    return labels, levels


def _check_covariate(values):
    """Return the covariate as floats, or raise InvalidCovariateError."""
    if values.isna().any():
        raise InvalidCovariateError(
            f"Covariate has {values.isna().sum()} missing values among tested samples"
        )
    if values.dtype == bool:
        raise InvalidCovariateError("Covariate must be numeric, got boolean values")

    covariate = pd.to_numeric(values, errors='coerce')
    if covariate.isna().any():
        bad = values[covariate.isna()].unique().tolist()
        raise InvalidCovariateError(f"Covariate has non-numeric values: {bad[:5]}")
    if len(covariate) < 3:
        raise InvalidCovariateError(
            f"Correlation test needs at least 3 samples, got {len(covariate)}"
        )
    if covariate.nunique() < 2:
        raise InvalidCovariateError("Covariate is constant across all samples")

    return covariate.astype(float)


def _test_all_features(abundance_df, metadata, variable, config):
    """
    Run the configured test on every feature passing the abundance filter.

    Returns the TestResult list for all tested features (sorted by adjusted
    p-value, then feature ID), the filtered abundance table and the sample
    values the test used.
    """
    values = _sample_values(abundance_df, metadata, variable)

    # Grouping/covariate problems are reported even when nothing passes the filter
    if config.test_variant == 'two_group':
        values, levels = _check_grouping(values)
    else:
        values = _check_covariate(values)

    filtered = filter_by_abundance(abundance_df, config.abundance_cutoff)
    if filtered.empty:
        message = (f"No features reach the abundance cutoff {config.abundance_cutoff} "
                   f"(of {abundance_df.shape[0]} features)")
        if config.require_features:
            raise EmptyInputError(message)
        logger.warning(message)
        return [], filtered, values

    if config.test_variant == 'two_group':
        data_a = filtered[values.index[values == levels[0]]].to_numpy(dtype=float)
        data_b = filtered[values.index[values == levels[1]]].to_numpy(dtype=float)
        jobs = [(data_a[i], data_b[i]) for i in range(filtered.shape[0])]
        raw = _run_tests(_rank_sum_test, jobs, config.n_workers)
    else:
        data = filtered[values.index].to_numpy(dtype=float)
        covariate = values.to_numpy()
        jobs = [(data[i], covariate) for i in range(filtered.shape[0])]
        raw = _run_tests(_spearman_test, jobs, config.n_workers)

    raw_p = [pval for _, pval in raw]
    adjusted = fdr_correction(raw_p)

    test_name = TEST_NAMES[config.test_variant]
    results = [
        TestResult(
            feature_id=feature,
            test=test_name,
            statistic=stat,
            raw_p=pval,
            adjusted_p=float(adj),
        )
        for feature, (stat, pval), adj in zip(filtered.index, raw, adjusted)
    ]
    results.sort(key=lambda r: (r.adjusted_p, r.feature_id))

    logger.info("Tested %d features with %s", len(results), test_name)
    return results, filtered, values


def screen_associations(abundance_df, metadata, variable=None, config=None, **overrides):
    """
    Find features associated with a sample grouping or covariate.

    Features reaching the abundance cutoff in at least one sample are tested
    with a two-sided Mann-Whitney U test (two-level grouping) or Spearman
    correlation (numeric covariate). P-values are corrected together with the
    Benjamini-Hochberg procedure.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Abundance DataFrame with features as index, samples as columns
    metadata : pandas.DataFrame, pandas.Series or sequence
        Sample metadata. A DataFrame needs `variable`; a Series is aligned by
        sample ID; any other sequence is aligned positionally with the columns
    variable : str, optional
        Metadata column holding the grouping or covariate
    config : ScreeningConfig, optional
        Screening parameters (default: ScreeningConfig())
    **overrides
        Individual ScreeningConfig fields, e.g. alpha=0.1

    Returns:
    --------
    list of TestResult
        Features with adjusted p-value below alpha, sorted by adjusted p-value
        and then feature ID
    """
    if config is None:
        config = ScreeningConfig(**overrides)
    elif overrides:
        config = replace(config, **overrides)

    results, _, _ = _test_all_features(abundance_df, metadata, variable, config)
    significant = [r for r in results if r.adjusted_p < config.alpha]

    logger.info("%d of %d tested features significant at alpha=%g",
                len(significant), len(results), config.alpha)
    return significant


def results_to_dataframe(results):
    """Convert a list of TestResult into a DataFrame, keeping its order."""
    columns = ['Feature', 'Test', 'Statistic', 'P-value', 'Adjusted P-value']
    return pd.DataFrame(
        [(r.feature_id, r.test, r.statistic, r.raw_p, r.adjusted_p) for r in results],
        columns=columns
    )


def differential_abundance_analysis(abundance_df, metadata_df, variable, method='wilcoxon',
                                    abundance_cutoff=1e-3, n_workers=1):
    """
    Test every feature for differential abundance and tabulate the results.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Abundance DataFrame with features as index, samples as columns
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Metadata variable defining groups (wilcoxon) or the covariate (spearman)
    method : str, optional
        'wilcoxon' for a two-group comparison or 'spearman' for a covariate
    abundance_cutoff : float, optional
        Minimum abundance a feature must reach in at least one sample
    n_workers : int, optional
        Worker processes for the per-feature tests

    Returns:
    --------
    pandas.DataFrame
        One row per tested feature, sorted by adjusted p-value
    """
    variants = {'wilcoxon': 'two_group', 'spearman': 'correlation'}
    if method not in variants:
        raise ValueError(f"Unsupported differential abundance method: {method}")

    config = ScreeningConfig(
        abundance_cutoff=abundance_cutoff,
        test_variant=variants[method],
        n_workers=n_workers,
    )
    results, filtered, values = _test_all_features(abundance_df, metadata_df, variable, config)
    results_df = results_to_dataframe(results)

    if results_df.empty or method != 'wilcoxon':
        return results_df

    levels = sorted(values.unique(), key=str)
    means = {
        level: filtered[values.index[values == level]].mean(axis=1)
        for level in levels
    }
    for level in levels:
        results_df[f'Mean {level}'] = results_df['Feature'].map(means[level]).to_numpy()

    pseudocount = 1e-10
    results_df['Log2 Fold Change'] = np.log2(
        (results_df[f'Mean {levels[1]}'] + pseudocount) /
        (results_df[f'Mean {levels[0]}'] + pseudocount)
    )
    return results_df


def calculate_beta_diversity(abundance_df, metric='braycurtis'):
    """
    Calculate a beta diversity distance matrix between samples.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Abundance DataFrame with features as index, samples as columns
    metric : str, optional
        'braycurtis' (default), 'jaccard' (presence/absence) or 'euclidean'

    Returns:
    --------
    skbio.DistanceMatrix
        Distance matrix of beta diversity between samples
    """
    abundance = abundance_df.T.apply(pd.to_numeric, errors='coerce').fillna(0)
    abundance_array = abundance.values.astype(float)

    if metric == 'braycurtis':
        distances = squareform(pdist(abundance_array, metric='braycurtis'))
    elif metric == 'jaccard':
        binary_array = abundance_array > 0
        distances = squareform(pdist(binary_array, metric='jaccard'))
    elif metric == 'euclidean':
        distances = squareform(pdist(abundance_array, metric='euclidean'))
    else:
        raise ValueError(f"Unsupported beta diversity metric: {metric}")

    # Pairs of empty samples give 0/0
    if np.isnan(distances).any():
        logger.warning("NaN values found in %s distance matrix, replacing with zeros", metric)
        distances = np.nan_to_num(distances)

    distances = (distances + distances.T) / 2
    return DistanceMatrix(distances, ids=[str(s) for s in abundance.index])


def ordinate(abundance_df=None, distance_matrix=None, method='PCoA', n_components=2):
    """
    Project samples onto their leading ordination axes.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame, optional
        Abundance DataFrame with features as index, samples as columns (PCA,
        or PCoA on Bray-Curtis when no distance matrix is given)
    distance_matrix : skbio.DistanceMatrix, optional
        Precomputed distances for PCoA
    method : str, optional
        'PCoA' (default) or 'PCA'
    n_components : int, optional
        Number of axes to keep

    Returns:
    --------
    OrdinationResult
    """
    if method == 'PCoA':
        if distance_matrix is None:
            if abundance_df is None:
                raise ValueError("PCoA needs a distance matrix or an abundance table")
            distance_matrix = calculate_beta_diversity(abundance_df)
        result = pcoa(distance_matrix, method='eigh')
        n_axes = min(n_components, result.samples.shape[1])
        coordinates = result.samples.iloc[:, :n_axes].copy()
        coordinates.columns = [f'PC{i + 1}' for i in range(n_axes)]
        explained = pd.Series(
            np.asarray(result.proportion_explained)[:n_axes],
            index=coordinates.columns
        )

    elif method == 'PCA':
        if abundance_df is None:
            raise ValueError("PCA needs an abundance table")
        samples = abundance_df.T
        n_axes = min(n_components, *samples.shape)
        pca = PCA(n_components=n_axes)
        projected = pca.fit_transform(samples.values.astype(float))
        columns = [f'PC{i + 1}' for i in range(n_axes)]
        coordinates = pd.DataFrame(projected, index=samples.index, columns=columns)
        explained = pd.Series(pca.explained_variance_ratio_, index=columns)

    else:
        raise ValueError(f"Unsupported ordination method: {method}")

    return OrdinationResult(coordinates=coordinates, proportion_explained=explained, method=method)
