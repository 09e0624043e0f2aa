# metagenome_tools/classify.py

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from skbio import DistanceMatrix
from sklearn.base import clone
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import (
    accuracy_score,
    average_precision_score,
    balanced_accuracy_score,
    precision_recall_curve,
    roc_auc_score,
    roc_curve,
)
from sklearn.model_selection import LeaveOneOut, StratifiedKFold, cross_val_predict
from sklearn.neighbors import KNeighborsClassifier
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import FunctionTransformer, StandardScaler

from .errors import InvalidGroupingError
from .parser import DEFAULT_PSEUDOCOUNT, align_samples

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITER_LASSO = 1000


@dataclass(frozen=True)
class LassoCVResult:
    """Cross-validated performance of the L1 logistic regression model."""
    predictions: pd.DataFrame
    roc_auc: float
    pr_auc: float
    fpr: np.ndarray
    tpr: np.ndarray
    precision: np.ndarray
    recall: np.ndarray
    feature_weights: pd.DataFrame
    positive_class: object


def knn_validate_clusters(distance_matrix, labels, n_neighbors=5):
    """
    Check how well sample groups are separated in a distance matrix.

    Each sample is classified by its nearest neighbours among all other
    samples (leave-one-out). High accuracy means groups form distinct
    clusters under the chosen dissimilarity.

    Parameters:
    -----------
    distance_matrix : skbio.DistanceMatrix
        Pairwise sample distances
    labels : pandas.Series or sequence
        Group label per sample, indexed by sample ID or in distance matrix order
    n_neighbors : int, optional
        Number of neighbours voting on each sample (default: 5)

    Returns:
    --------
    dict
        'accuracy', 'balanced_accuracy' and a 'predictions' DataFrame
    """
    if not isinstance(distance_matrix, DistanceMatrix):
        distance_matrix = DistanceMatrix(np.asarray(distance_matrix))

    ids = list(distance_matrix.ids)
    y = align_samples(ids, labels)

    if y.isna().any():
        raise ValueError(f"{y.isna().sum()} samples have no label")
    if y.nunique() < 2:
        raise ValueError("kNN validation needs at least 2 groups")
    if n_neighbors >= len(ids):
        raise ValueError(
            f"n_neighbors ({n_neighbors}) must be smaller than the number of samples ({len(ids)})"
        )

    model = KNeighborsClassifier(n_neighbors=n_neighbors, metric='precomputed')
    predicted = cross_val_predict(model, distance_matrix.data, y.to_numpy(), cv=LeaveOneOut())

    accuracy = float(accuracy_score(y, predicted))
    balanced = float(balanced_accuracy_score(y, predicted))
    logger.info("kNN (k=%d) leave-one-out accuracy %.3f, balanced %.3f",
                n_neighbors, accuracy, balanced)

    predictions = pd.DataFrame({
        'True Label': y.to_numpy(),
        'Predicted Label': predicted,
    }, index=pd.Index(ids, name='Sample'))

    return {
        'accuracy': accuracy,
        'balanced_accuracy': balanced,
        'predictions': predictions,
    }


def _log_transform(X, pseudocount=DEFAULT_PSEUDOCOUNT):
    return np.log10(X + pseudocount)


def _lasso_pipeline(C, seed, pseudocount=DEFAULT_PSEUDOCOUNT):
    return Pipeline([
        ('log', FunctionTransformer(_log_transform, kw_args={'pseudocount': pseudocount})),
        ('scale', StandardScaler()),
        ('lasso', LogisticRegression(
            penalty='l1',
            solver='liblinear',
            C=C,
            max_iter=DEFAULT_MAX_ITER_LASSO,
            random_state=seed,
        )),
    ])


def lasso_cross_validation(abundance_df, labels, positive_class=None, n_folds=5,
                           n_repeats=3, C=1.0, seed=42):
    """
    Estimate disease-state prediction performance of an L1 logistic regression.

    Features get the parser.normalize_log_std transform, but fitted inside
    each training fold, so test samples never contribute to the normalization. Out-of-fold
    probabilities are averaged over repeated stratified splits.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Abundance DataFrame with features as index, samples as columns
    labels : pandas.Series or sequence
        Binary label per sample
    positive_class : optional
        Label treated as the positive class (default: last level in sorted order)
    n_folds : int, optional
        Number of cross-validation folds (default: 5)
    n_repeats : int, optional
        Number of repeated fold splits (default: 3)
    C : float, optional
        Inverse regularization strength (default: 1.0)
    seed : int, optional
        Random seed for fold assignment

    Returns:
    --------
    LassoCVResult
    """
    samples = list(abundance_df.columns)
    y = align_samples(samples, labels)

    levels = sorted(y.dropna().unique(), key=str)
    if y.isna().any() or len(levels) != 2:
        raise InvalidGroupingError(
            f"LASSO classification needs exactly 2 labels for every sample, found {levels}"
        )
    if positive_class is None:
        positive_class = levels[1]
    elif positive_class not in levels:
        # Command-line values arrive as strings, e.g. '1' for 0/1 labels
        matches = [level for level in levels if str(level) == str(positive_class)]
        if not matches:
            raise ValueError(f"Positive class '{positive_class}' not among labels {levels}")
        positive_class = matches[0]

    y_binary = (y == positive_class).astype(int).to_numpy()
    smallest_class = int(min(y_binary.sum(), len(y_binary) - y_binary.sum()))
    if n_folds > smallest_class:
        raise ValueError(
            f"n_folds ({n_folds}) exceeds the size of the smallest class ({smallest_class})"
        )

    X = abundance_df.T.to_numpy(dtype=float)
    template = _lasso_pipeline(C, seed)

    probabilities = np.zeros((n_repeats, len(samples)))
    coefficients = []
    for repeat in range(n_repeats):
        folds = StratifiedKFold(n_splits=n_folds, shuffle=True, random_state=seed + repeat)
        for train_idx, test_idx in folds.split(X, y_binary):
            model = clone(template).fit(X[train_idx], y_binary[train_idx])
            probabilities[repeat, test_idx] = model.predict_proba(X[test_idx])[:, 1]
            coefficients.append(model.named_steps['lasso'].coef_[0])

    mean_proba = probabilities.mean(axis=0)
    roc_auc = float(roc_auc_score(y_binary, mean_proba))
    pr_auc = float(average_precision_score(y_binary, mean_proba))
    fpr, tpr, _ = roc_curve(y_binary, mean_proba)
    precision, recall, _ = precision_recall_curve(y_binary, mean_proba)

    logger.info("LASSO %d-fold x %d cross-validation: ROC AUC %.3f, PR AUC %.3f",
                n_folds, n_repeats, roc_auc, pr_auc)

    coefficients = np.vstack(coefficients)
    weights = pd.DataFrame({
        'Mean Weight': coefficients.mean(axis=0),
        'Fraction Selected': (coefficients != 0).mean(axis=0),
    }, index=pd.Index(abundance_df.index, name='Feature'))
    weights = weights.loc[weights['Mean Weight'].abs().sort_values(ascending=False).index]

    negative_class = levels[0] if positive_class == levels[1] else levels[1]
    predictions = pd.DataFrame({
        'True Label': y.to_numpy(),
        'Probability': mean_proba,
        'Predicted Label': np.where(mean_proba >= 0.5, positive_class, negative_class),
    }, index=pd.Index(samples, name='Sample'))

    return LassoCVResult(
        predictions=predictions,
        roc_auc=roc_auc,
        pr_auc=pr_auc,
        fpr=fpr,
        tpr=tpr,
        precision=precision,
        recall=recall,
        feature_weights=weights,
        positive_class=positive_class,
    )
