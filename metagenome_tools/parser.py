# metagenome_tools/parser.py

import logging
import os

import numpy as np
import pandas as pd
from skbio.stats import subsample_counts

from .errors import DimensionMismatchError

logger = logging.getLogger(__name__)

DEFAULT_PSEUDOCOUNT = 1e-5


def _infer_separator(file_path):
    if file_path.endswith(('.tsv', '.txt')):
        return '\t'
    return ','


def load_abundance_table(file_path, sep=None):
    """
    Load a taxonomic abundance table from a delimited file.

    Parameters:
    -----------
    file_path : str
        Path to the table; first column holds feature IDs, remaining columns are samples
    sep : str, optional
        Field separator. If None, inferred from the file extension (tab for .tsv/.txt)

    Returns:
    --------
    pandas.DataFrame
        Abundance DataFrame with features as index, samples as columns
    """
    if sep is None:
        sep = _infer_separator(file_path)

    df = pd.read_csv(file_path, sep=sep, index_col=0, comment='#')
    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)

    if df.index.duplicated().any():
        duplicates = df.index[df.index.duplicated()].unique().tolist()
        raise ValueError(f"Duplicate feature IDs in {file_path}: {duplicates[:5]}")
    if df.columns.duplicated().any():
        raise ValueError(f"Duplicate sample IDs in {file_path}")

    # Non-numeric cells count as not detected
    df = df.apply(pd.to_numeric, errors='coerce').fillna(0)

    if (df.values < 0).any():
        raise ValueError(f"Abundance table {file_path} contains negative values")

    logger.info("Loaded %d features x %d samples from %s", df.shape[0], df.shape[1], file_path)
    return df


def load_metadata(metadata_file, sample_id_col='SampleID'):
    """
    Load sample metadata from a CSV, TSV or Excel file.

    Parameters:
    -----------
    metadata_file : str
        Path to the metadata file
    sample_id_col : str, optional
        Name of the column containing sample IDs

    Returns:
    --------
    pandas.DataFrame
        DataFrame containing metadata with sample ID as index
    """
    if metadata_file.endswith('.csv'):
        metadata = pd.read_csv(metadata_file)
    elif metadata_file.endswith(('.tsv', '.txt')):
        metadata = pd.read_csv(metadata_file, sep='\t')
    elif metadata_file.endswith(('.xlsx', '.xls')):
        metadata = pd.read_excel(metadata_file)
    else:
        raise ValueError("Metadata file must be CSV, TSV or Excel format")

    if sample_id_col in metadata.columns:
        metadata = metadata.set_index(sample_id_col)
    else:
        raise ValueError(f"Sample ID column '{sample_id_col}' not found in metadata")

    metadata.index = metadata.index.astype(str)
    return metadata


def align_metadata(abundance_df, metadata_df):
    """
    Reorder metadata rows to match the sample columns of an abundance table.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Abundance DataFrame with samples as columns
    metadata_df : pandas.DataFrame or pandas.Series
        Metadata indexed by sample ID

    Returns:
    --------
    pandas.DataFrame or pandas.Series
        Metadata with exactly one row per abundance sample, in column order
    """
    return align_samples(abundance_df.columns, metadata_df)


def align_samples(sample_ids, metadata):
    """
    Select metadata entries for the given samples, in the given order.

    A pandas object is matched by sample ID whenever its index shares any
    label with the samples. Otherwise, like any other sequence, it is taken
    to be in sample order already and must have one entry per sample.
    """
    sample_ids = pd.Index(sample_ids)

    if not isinstance(metadata, (pd.Series, pd.DataFrame)):
        metadata = pd.Series(list(metadata))

    if len(metadata.index.intersection(sample_ids)) == 0:
        if len(metadata) != len(sample_ids):
            raise DimensionMismatchError(
                f"Abundance table has {len(sample_ids)} samples but "
                f"{len(metadata)} metadata values were given"
            )
        logger.debug("Metadata index shares no sample IDs, aligning %d rows by position",
                     len(sample_ids))
        aligned = metadata.copy()
        aligned.index = sample_ids
        return aligned

    missing = [s for s in sample_ids if s not in metadata.index]
    if missing:
        raise DimensionMismatchError(
            f"{len(missing)} of {len(sample_ids)} samples have no metadata entry "
            f"(e.g. {missing[:5]})"
        )

    extra = len(metadata.index) - len(metadata.index.intersection(sample_ids))
    if extra:
        logger.info("Dropping %d metadata rows without abundance data", extra)

    return metadata.loc[sample_ids]


def join_abundance_with_metadata(abundance_df, metadata_df):
    """
    Join the abundance table with metadata.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Abundance DataFrame with samples as columns
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index

    Returns:
    --------
    pandas.DataFrame
        Transposed abundance DataFrame (samples as rows) with metadata columns added
    """
    aligned = align_metadata(abundance_df, metadata_df)
    return abundance_df.T.join(aligned)


def relative_abundance(abundance_df):
    """
    Normalize each sample so that its feature values sum to 1.

    Samples with a total of zero are left as all zeros.
    """
    totals = abundance_df.sum(axis=0)
    empty = totals[totals == 0].index
    if len(empty):
        logger.warning("%d samples have zero total abundance: %s", len(empty), list(empty[:5]))

    return abundance_df.div(totals.replace(0, np.nan), axis=1).fillna(0)


def normalize_log_std(abundance_df, pseudocount=DEFAULT_PSEUDOCOUNT):
    """
    Log-transform and standardize each feature across samples.

    Values become log10(x + pseudocount), then each feature is centred and
    scaled to unit variance. Features that are constant map to 0.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Abundance DataFrame with features as index, samples as columns
    pseudocount : float, optional
        Added before the log so that absent features stay finite (default: 1e-5)

    Returns:
    --------
    pandas.DataFrame
        Per-feature z-scores of the log abundances, same shape as the input
    """
    logged = np.log10(abundance_df.astype(float) + pseudocount)
    means = logged.mean(axis=1)
    stds = logged.std(axis=1, ddof=0).replace(0, np.nan)
    return logged.sub(means, axis=0).div(stds, axis=0).fillna(0)


def filter_by_abundance(abundance_df, cutoff=1e-3):
    """
    Keep features whose abundance reaches the cutoff in at least one sample.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Abundance DataFrame with features as index, samples as columns
    cutoff : float, optional
        Minimum abundance a feature must reach in at least one sample (default: 1e-3)

    Returns:
    --------
    pandas.DataFrame
        Filtered abundance DataFrame, original feature order preserved
    """
    keep = abundance_df.max(axis=1) >= cutoff
    logger.debug("Abundance filter %.3g kept %d of %d features", cutoff, keep.sum(), len(keep))
    return abundance_df.loc[keep]


def filter_by_prevalence(abundance_df, min_prevalence=0.1):
    """Keep features detected (> 0) in at least min_prevalence of the samples."""
    prevalence = (abundance_df > 0).mean(axis=1)
    return abundance_df.loc[prevalence >= min_prevalence]


def rarefy(counts_df, depth=None, seed=None):
    """
    Subsample counts without replacement to a common depth per sample.

    Parameters:
    -----------
    counts_df : pandas.DataFrame
        Integer count DataFrame with features as index, samples as columns
    depth : int, optional
        Target number of counts per sample (default: smallest sample total)
    seed : int, optional
        Seed for the random generator

    Returns:
    --------
    pandas.DataFrame
        Rarefied counts; samples with fewer than depth counts are dropped
    """
    counts = counts_df.round().astype(int)
    totals = counts.sum(axis=0)

    if depth is None:
        depth = int(totals.min())

    too_shallow = totals[totals < depth].index
    if len(too_shallow):
        logger.warning("Dropping %d samples with fewer than %d counts", len(too_shallow), depth)
        counts = counts.drop(columns=too_shallow)

    rng = np.random.default_rng(seed)
    rarefied = {}
    for sample in counts.columns:
        sample_seed = int(rng.integers(0, 2**31 - 1))
        rarefied[sample] = subsample_counts(counts[sample].values, depth, seed=sample_seed)

    return pd.DataFrame(rarefied, index=counts.index, columns=counts.columns)
