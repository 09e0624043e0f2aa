# metagenome_tools/viz.py

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from scipy.cluster import hierarchy
from scipy.spatial import distance

from .parser import align_samples, normalize_log_std


def plot_ordination(ordination, metadata_df, variable, figsize=(10, 8)):
    """
    Scatter plot of samples on the first two ordination axes.

    Parameters:
    -----------
    ordination : OrdinationResult
        Result of stats.ordinate
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Metadata variable to colour points by
    figsize : tuple, optional
        Figure size (width, height) in inches

    Returns:
    --------
    matplotlib.figure.Figure
        Ordination plot
    """
    coordinates = ordination.coordinates
    if coordinates.shape[1] < 2:
        raise ValueError("Ordination plot needs at least two axes")

    plot_df = coordinates.iloc[:, :2].copy()
    plot_df[variable] = align_samples(coordinates.index, metadata_df)[variable].to_numpy()

    fig, ax = plt.subplots(figsize=figsize)
    sns.scatterplot(data=plot_df, x='PC1', y='PC2', hue=variable, s=100, ax=ax)

    explained = ordination.proportion_explained
    ax.set_xlabel(f'PC1 ({explained.iloc[0]:.1%} explained)')
    ax.set_ylabel(f'PC2 ({explained.iloc[1]:.1%} explained)')
    ax.set_title(f'{ordination.method} ({variable})')

    plt.tight_layout()
    return fig


def plot_feature_boxplots(abundance_df, metadata_df, variable, features, ncols=3,
                          log_scale=True, pseudocount=1e-5):
    """
    Boxplots of selected features' abundance per group, one panel per feature.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Abundance DataFrame with features as index, samples as columns
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Metadata variable defining groups
    features : list
        Feature IDs to plot, e.g. the significant features of a screen
    ncols : int, optional
        Number of panels per row
    log_scale : bool, optional
        Plot log10(abundance + pseudocount) instead of raw values

    Returns:
    --------
    matplotlib.figure.Figure
        Boxplot figure
    """
    missing = [f for f in features if f not in abundance_df.index]
    if missing:
        raise ValueError(f"Features not found in abundance data: {missing[:5]}")
    if not features:
        raise ValueError("No features to plot")

    groups = align_samples(abundance_df.columns, metadata_df)[variable]

    ncols = min(ncols, len(features))
    nrows = int(np.ceil(len(features) / ncols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(4 * ncols, 4 * nrows), squeeze=False)

    for ax, feature in zip(axes.flat, features):
        values = abundance_df.loc[feature].astype(float)
        if log_scale:
            values = np.log10(values + pseudocount)
        plot_df = pd.DataFrame({'Abundance': values.to_numpy(), variable: groups.to_numpy()})

        sns.boxplot(data=plot_df, x=variable, y='Abundance', ax=ax, color='lightgrey')
        sns.stripplot(data=plot_df, x=variable, y='Abundance', ax=ax, color='black', size=3)
        ax.set_title(str(feature), fontsize=9)
        ax.set_ylabel('log10 Abundance' if log_scale else 'Abundance')

    for ax in list(axes.flat)[len(features):]:
        ax.axis('off')

    plt.tight_layout()
    return fig


def plot_relative_abundance_heatmap(abundance_df, metadata_df=None, group_var=None,
                                    top_n=20, cluster_samples=True, cmap='viridis',
                                    figsize=(12, 10), log_std=False):
    """
    Create a heatmap of the most abundant features.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Abundance DataFrame with features as index, samples as columns
    metadata_df : pandas.DataFrame, optional
        Metadata DataFrame with samples as index
    group_var : str, optional
        Metadata variable shown as a colour bar above the samples
    top_n : int, optional
        Number of features with the highest mean abundance to include (default: 20)
    cluster_samples : bool, optional
        Order samples by average-linkage clustering (default: True)
    log_std : bool, optional
        Show per-feature z-scores of log10 abundance (parser.normalize_log_std)
        instead of raw values, so low-abundance features stay visible

    Returns:
    --------
    matplotlib.figure.Figure
        Heatmap figure
    """
    abundance = abundance_df.copy()

    if top_n is not None and top_n < len(abundance.index):
        top_features = abundance.mean(axis=1).nlargest(top_n).index
        abundance = abundance.loc[top_features]

    if log_std:
        abundance = normalize_log_std(abundance)
        value_label = 'log10 Abundance (z-score)'
        title = 'Feature Log Abundance'
    else:
        value_label = 'Relative Abundance'
        title = 'Feature Relative Abundance'

    if cluster_samples and abundance.shape[1] > 2:
        col_linkage = hierarchy.linkage(distance.pdist(abundance.values.T), method='average')
        abundance = abundance[abundance.columns[hierarchy.leaves_list(col_linkage)]]

    if metadata_df is not None and group_var is not None:
        fig, (bar_ax, ax) = plt.subplots(
            2, 1, figsize=figsize, sharex=True,
            gridspec_kw={'height_ratios': [1, 20]}
        )
        groups = align_samples(abundance.columns, metadata_df)[group_var]
        levels = list(pd.unique(groups))
        lut = dict(zip(levels, sns.color_palette('Set2', len(levels))))
        bar_ax.imshow([[lut[g] for g in groups]], aspect='auto', extent=(0, len(groups), 0, 1))
        bar_ax.set_yticks([])
        bar_ax.set_title(f'{title} by {group_var}')
        for label, color in lut.items():
            bar_ax.bar(0, 0, color=color, label=str(label))
        bar_ax.legend(title=group_var, bbox_to_anchor=(1.01, 1), loc='upper left')
    else:
        fig, ax = plt.subplots(figsize=figsize)
        ax.set_title(title)

    sns.heatmap(abundance, cmap=cmap, xticklabels=True, yticklabels=True, ax=ax,
                center=0 if log_std else None, cbar_kws={'label': value_label})

    plt.tight_layout()
    return fig


def plot_roc_curve(lasso_result, figsize=(12, 5)):
    """Plot cross-validated ROC and precision-recall curves side by side."""
    fig, (roc_ax, pr_ax) = plt.subplots(1, 2, figsize=figsize)

    roc_ax.plot(lasso_result.fpr, lasso_result.tpr, color='darkred',
                label=f'AUC = {lasso_result.roc_auc:.2f}')
    roc_ax.plot([0, 1], [0, 1], 'k--', linewidth=1)
    roc_ax.set_xlabel('False Positive Rate')
    roc_ax.set_ylabel('True Positive Rate')
    roc_ax.set_title('ROC Curve')
    roc_ax.legend(loc='lower right')

    baseline = (lasso_result.predictions['True Label'] == lasso_result.positive_class).mean()
    pr_ax.plot(lasso_result.recall, lasso_result.precision, color='darkblue',
               label=f'AUC = {lasso_result.pr_auc:.2f}')
    pr_ax.axhline(baseline, color='k', linestyle='--', linewidth=1)
    pr_ax.set_xlabel('Recall')
    pr_ax.set_ylabel('Precision')
    pr_ax.set_title('Precision-Recall Curve')
    pr_ax.legend(loc='lower left')

    plt.tight_layout()
    return fig
