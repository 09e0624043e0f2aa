"""
Tests for association screening, FDR correction, beta diversity and ordination.

Tests cover:
- The worked three-feature example (exact rank-sum p-values, BH correction)
- Output guarantees: adjusted >= raw, monotone ordering, alpha threshold
- Abundance filtering and empty-input handling
- Grouping, covariate and dimension errors
- Metadata given as DataFrame, Series or positional sequence
- Distance matrices and PCoA/PCA ordination
"""

import math

import numpy as np
import pandas as pd
import pytest
from skbio import DistanceMatrix

from metagenome_tools.config import ScreeningConfig
from metagenome_tools.errors import (
    DimensionMismatchError,
    EmptyInputError,
    InvalidCovariateError,
    InvalidGroupingError,
)
from metagenome_tools.stats import (
    TestResult,
    calculate_beta_diversity,
    differential_abundance_analysis,
    fdr_correction,
    ordinate,
    results_to_dataframe,
    screen_associations,
)


class TestWorkedExample:
    """The 3 features x 6 samples example with groups A,A,A,B,B,B."""

    def test_separated_feature_has_minimum_exact_p(self, small_abundance, small_metadata):
        table = differential_abundance_analysis(small_abundance, small_metadata, "Group")
        row = table.set_index("Feature").loc["feature_1"]
        assert row["P-value"] == pytest.approx(0.1)
        # m = 3 and the other features have p = 1
        assert row["Adjusted P-value"] == pytest.approx(0.3)

    def test_constant_feature_has_p_one(self, small_abundance, small_metadata):
        table = differential_abundance_analysis(small_abundance, small_metadata, "Group")
        row = table.set_index("Feature").loc["feature_2"]
        assert row["P-value"] == 1.0
        assert row["Adjusted P-value"] == 1.0

    def test_separated_feature_ranks_first(self, small_abundance, small_metadata):
        table = differential_abundance_analysis(small_abundance, small_metadata, "Group")
        assert table["Feature"].iloc[0] == "feature_1"
        assert table["Adjusted P-value"].iloc[0] == table["Adjusted P-value"].min()

    def test_nothing_significant_at_default_alpha(self, small_abundance, small_groups):
        assert screen_associations(small_abundance, small_groups) == []

    def test_separated_feature_reported_at_lenient_alpha(self, small_abundance, small_groups):
        results = screen_associations(small_abundance, small_groups, alpha=0.5)
        assert [r.feature_id for r in results] == ["feature_1"]
        assert isinstance(results[0], TestResult)
        assert results[0].test == "Mann-Whitney U"

    def test_group_means_and_fold_change(self, small_abundance, small_metadata):
        table = differential_abundance_analysis(small_abundance, small_metadata, "Group")
        row = table.set_index("Feature").loc["feature_1"]
        assert row["Mean A"] == pytest.approx(2.0)
        assert row["Mean B"] == pytest.approx(11.0)
        assert row["Log2 Fold Change"] == pytest.approx(np.log2(11.0 / 2.0))


class TestScreeningGuarantees:
    """Properties that hold for every screening run."""

    def test_adjusted_bounds(self, synthetic_dataset):
        abundance, metadata, _ = synthetic_dataset
        table = differential_abundance_analysis(abundance, metadata, "Status")
        assert (table["Adjusted P-value"] <= 1.0).all()
        assert (table["Adjusted P-value"] >= table["P-value"] - 1e-12).all()

    def test_monotone_in_raw_p(self, synthetic_dataset):
        abundance, metadata, _ = synthetic_dataset
        table = differential_abundance_analysis(abundance, metadata, "Status")
        by_raw = table.sort_values("P-value", kind="mergesort")
        assert by_raw["Adjusted P-value"].is_monotonic_increasing

    def test_output_sorted_and_below_alpha(self, synthetic_dataset):
        abundance, metadata, informative = synthetic_dataset
        results = screen_associations(abundance, metadata, "Status", alpha=0.05)
        adjusted = [r.adjusted_p for r in results]
        assert adjusted == sorted(adjusted)
        assert all(p < 0.05 for p in adjusted)
        assert set(informative) <= {r.feature_id for r in results}

    def test_features_above_alpha_excluded(self, synthetic_dataset):
        abundance, metadata, _ = synthetic_dataset
        table = differential_abundance_analysis(abundance, metadata, "Status")
        reported = {r.feature_id for r in screen_associations(abundance, metadata, "Status")}
        not_significant = set(table.loc[table["Adjusted P-value"] >= 0.05, "Feature"])
        assert reported.isdisjoint(not_significant)

    def test_repeated_runs_identical(self, synthetic_dataset):
        abundance, metadata, _ = synthetic_dataset
        first = screen_associations(abundance, metadata, "Status", alpha=1.0)
        second = screen_associations(abundance, metadata, "Status", alpha=1.0)
        assert first == second

    def test_inputs_not_modified(self, synthetic_dataset):
        abundance, metadata, _ = synthetic_dataset
        abundance_copy = abundance.copy()
        metadata_copy = metadata.copy()
        screen_associations(abundance, metadata, "Status")
        pd.testing.assert_frame_equal(abundance, abundance_copy)
        pd.testing.assert_frame_equal(metadata, metadata_copy)

    def test_ties_broken_by_feature_id(self):
        abundance = pd.DataFrame(
            [[1, 2, 3, 10, 11, 12], [1, 2, 3, 10, 11, 12]],
            index=["zeta", "alpha"],
            columns=list("abcdef"),
            dtype=float,
        )
        results = screen_associations(abundance, ["x", "x", "x", "y", "y", "y"], alpha=1.0)
        assert [r.feature_id for r in results] == ["alpha", "zeta"]

    def test_parallel_matches_sequential(self, synthetic_dataset):
        abundance, metadata, _ = synthetic_dataset
        sequential = screen_associations(abundance, metadata, "Status", alpha=1.0)
        parallel = screen_associations(abundance, metadata, "Status", alpha=1.0, n_workers=2)
        assert parallel == sequential


class TestAbundanceFilter:
    """Features below the cutoff in every sample are never tested."""

    def test_low_feature_excluded_even_if_separated(self):
        abundance = pd.DataFrame(
            {
                "S1": [0.001, 0.30],
                "S2": [0.002, 0.35],
                "S3": [0.003, 0.40],
                "S4": [0.007, 0.50],
                "S5": [0.008, 0.55],
                "S6": [0.009, 0.60],
            },
            index=["rare", "common"],
        )
        groups = ["A", "A", "A", "B", "B", "B"]
        results = screen_associations(abundance, groups, abundance_cutoff=0.01, alpha=1.0)
        assert "rare" not in {r.feature_id for r in results}

        table = differential_abundance_analysis(
            abundance, pd.DataFrame({"G": groups}, index=abundance.columns), "G",
            abundance_cutoff=0.01
        )
        assert list(table["Feature"]) == ["common"]

    def test_feature_at_cutoff_is_tested(self):
        abundance = pd.DataFrame(
            [[0.01, 0, 0, 0]], index=["edge"], columns=["a", "b", "c", "d"]
        )
        table = differential_abundance_analysis(
            abundance, pd.DataFrame({"G": ["x", "x", "y", "y"]}, index=abundance.columns), "G",
            abundance_cutoff=0.01
        )
        assert list(table["Feature"]) == ["edge"]

    def test_no_surviving_features_returns_empty(self, small_abundance, small_groups):
        assert screen_associations(small_abundance, small_groups, abundance_cutoff=100) == []

    def test_no_surviving_features_raises_when_required(self, small_abundance, small_groups):
        with pytest.raises(EmptyInputError):
            screen_associations(
                small_abundance, small_groups, abundance_cutoff=100, require_features=True
            )


class TestGroupingValidation:
    """Grouping must have exactly two levels."""

    def test_three_levels(self, small_abundance, small_metadata):
        with pytest.raises(InvalidGroupingError, match="found 3"):
            screen_associations(small_abundance, small_metadata, "Site")

    def test_one_level(self, small_abundance):
        with pytest.raises(InvalidGroupingError, match="found 1"):
            screen_associations(small_abundance, ["A"] * 6)

    def test_grouping_checked_before_abundance_filter(self, small_abundance):
        with pytest.raises(InvalidGroupingError):
            screen_associations(small_abundance, ["A"] * 6, abundance_cutoff=100)

    def test_single_sample_group_does_not_crash(self, small_abundance):
        results = screen_associations(
            small_abundance, ["A", "B", "B", "B", "B", "B"], alpha=1.0
        )
        for r in results:
            assert 0.0 < r.raw_p <= 1.0

    def test_unlabelled_samples_excluded(self, small_abundance):
        groups = ["A", "A", None, "B", "B", "B"]
        table = differential_abundance_analysis(
            small_abundance, pd.DataFrame({"G": groups}, index=small_abundance.columns), "G"
        )
        row = table.set_index("Feature").loc["feature_1"]
        # 2 vs 3 perfectly separated: exact two-sided p = 2 / C(5, 2)
        assert row["P-value"] == pytest.approx(0.2)


class TestCovariateScreening:
    """Spearman correlation against a numeric covariate."""

    def test_monotone_feature_correlates(self, small_abundance, small_metadata):
        results = screen_associations(
            small_abundance, small_metadata, "Age", test_variant="correlation", alpha=1.0
        )
        top = results[0]
        assert top.feature_id == "feature_1"
        assert top.statistic == pytest.approx(1.0)
        assert top.raw_p < 0.01
        assert top.test == "Spearman correlation"

    def test_constant_feature_p_one(self, small_abundance, small_metadata):
        table = differential_abundance_analysis(small_abundance, small_metadata, "Age", method="spearman")
        row = table.set_index("Feature").loc["feature_2"]
        assert row["P-value"] == 1.0
        assert math.isnan(row["Statistic"])

    def test_numeric_strings_accepted(self, small_abundance):
        ages = ["20", "30", "40", "50", "60", "70"]
        results = screen_associations(
            small_abundance, ages, test_variant="correlation", alpha=1.0
        )
        assert results[0].feature_id == "feature_1"

    def test_non_numeric_covariate(self, small_abundance, small_metadata):
        with pytest.raises(InvalidCovariateError, match="non-numeric"):
            screen_associations(small_abundance, small_metadata, "Site", test_variant="correlation")

    def test_missing_covariate(self, small_abundance):
        with pytest.raises(InvalidCovariateError, match="missing"):
            screen_associations(
                small_abundance, [20, 30, None, 50, 60, 70], test_variant="correlation"
            )

    def test_constant_covariate(self, small_abundance):
        with pytest.raises(InvalidCovariateError, match="constant"):
            screen_associations(small_abundance, [5] * 6, test_variant="correlation")

    def test_boolean_covariate(self, small_abundance):
        with pytest.raises(InvalidCovariateError, match="boolean"):
            screen_associations(
                small_abundance, [True, False, True, False, True, False], test_variant="correlation"
            )

    def test_too_few_samples(self, small_abundance):
        two_samples = small_abundance[["S1", "S4"]]
        with pytest.raises(InvalidCovariateError, match="at least 3 samples"):
            screen_associations(two_samples, [20, 50], test_variant="correlation")


class TestMetadataAlignment:
    """Metadata may be a DataFrame, a Series or a positional sequence."""

    def test_sequence_length_mismatch(self, small_abundance):
        with pytest.raises(DimensionMismatchError):
            screen_associations(small_abundance, ["A", "A", "B", "B", "B"])

    def test_missing_sample_in_metadata(self, small_abundance, small_metadata):
        with pytest.raises(DimensionMismatchError, match="no metadata entry"):
            screen_associations(small_abundance, small_metadata.drop(index="S4"), "Group")

    def test_shuffled_series_matches_positional(self, small_abundance, small_metadata, small_groups):
        shuffled = small_metadata["Group"].sample(frac=1.0, random_state=3)
        by_id = screen_associations(small_abundance, shuffled, alpha=1.0)
        by_position = screen_associations(small_abundance, small_groups, alpha=1.0)
        assert by_id == by_position

    def test_default_index_series_is_positional(self, small_abundance, small_groups):
        from_series = screen_associations(small_abundance, pd.Series(small_groups), alpha=1.0)
        from_list = screen_associations(small_abundance, small_groups, alpha=1.0)
        assert from_series == from_list

    def test_default_index_dataframe_is_positional(self, small_abundance, small_groups):
        metadata = pd.DataFrame({"Group": small_groups})
        results = screen_associations(small_abundance, metadata, "Group", alpha=1.0)
        assert results[0].feature_id == "feature_1"
        assert results[0].raw_p == pytest.approx(0.1)

    def test_default_index_length_mismatch(self, small_abundance, small_groups):
        with pytest.raises(DimensionMismatchError):
            screen_associations(small_abundance, pd.Series(small_groups[:5]))

    def test_extra_metadata_rows_ignored(self, small_abundance, small_metadata):
        extra = pd.DataFrame({"Group": ["A"], "Age": [1], "Site": ["gut"]},
                             index=pd.Index(["S99"], name="SampleID"))
        padded = pd.concat([small_metadata, extra])
        table = differential_abundance_analysis(small_abundance, padded, "Group")
        assert len(table) == 3

    def test_unknown_variable(self, small_abundance, small_metadata):
        with pytest.raises(ValueError, match="not found"):
            screen_associations(small_abundance, small_metadata, "Missing")

    def test_dataframe_requires_variable(self, small_abundance, small_metadata):
        with pytest.raises(ValueError, match="variable is required"):
            screen_associations(small_abundance, small_metadata)


class TestConfigHandling:
    """ScreeningConfig objects and keyword overrides."""

    def test_config_object(self, small_abundance, small_groups):
        config = ScreeningConfig(alpha=0.5)
        results = screen_associations(small_abundance, small_groups, config=config)
        assert [r.feature_id for r in results] == ["feature_1"]

    def test_override_on_config(self, small_abundance, small_groups):
        config = ScreeningConfig(alpha=0.5)
        results = screen_associations(small_abundance, small_groups, config=config, alpha=0.2)
        assert results == []

    def test_invalid_override(self, small_abundance, small_groups):
        with pytest.raises(ValueError):
            screen_associations(small_abundance, small_groups, alpha=0)

    def test_unknown_method(self, small_abundance, small_metadata):
        with pytest.raises(ValueError, match="Unsupported"):
            differential_abundance_analysis(small_abundance, small_metadata, "Group", method="ancom")


class TestFdrCorrection:
    """Benjamini-Hochberg step-up adjustment."""

    def test_known_values(self):
        adjusted = fdr_correction([0.01, 0.04, 0.03, 0.2])
        np.testing.assert_allclose(adjusted, [0.04, 0.04 * 4 / 3, 0.04 * 4 / 3, 0.2])

    def test_clipped_to_one(self):
        adjusted = fdr_correction([0.9, 0.95, 1.0])
        assert (adjusted <= 1.0).all()

    def test_empty(self):
        assert len(fdr_correction([])) == 0


class TestResultsToDataframe:
    def test_columns_and_order(self):
        results = [
            TestResult("b", "Mann-Whitney U", 0.0, 0.01, 0.02),
            TestResult("a", "Mann-Whitney U", 1.0, 0.03, 0.04),
        ]
        df = results_to_dataframe(results)
        assert list(df.columns) == ["Feature", "Test", "Statistic", "P-value", "Adjusted P-value"]
        assert list(df["Feature"]) == ["b", "a"]

    def test_empty(self):
        assert results_to_dataframe([]).empty


class TestBetaDiversity:
    """Distance matrices between samples."""

    def test_braycurtis(self, small_abundance):
        dm = calculate_beta_diversity(small_abundance)
        assert isinstance(dm, DistanceMatrix)
        assert dm.shape == (6, 6)
        assert list(dm.ids) == list(small_abundance.columns)
        np.testing.assert_allclose(dm.data, dm.data.T)
        assert dm["S1", "S1"] == 0.0

    def test_jaccard_presence_absence(self):
        abundance = pd.DataFrame({"a": [1, 0], "b": [5, 0], "c": [0, 3]}, index=["x", "y"])
        dm = calculate_beta_diversity(abundance, metric="jaccard")
        assert dm["a", "b"] == pytest.approx(0.0)
        assert dm["a", "c"] == pytest.approx(1.0)

    def test_unknown_metric(self, small_abundance):
        with pytest.raises(ValueError, match="Unsupported beta diversity metric"):
            calculate_beta_diversity(small_abundance, metric="unifrac")


class TestOrdination:
    """PCoA and PCA projections."""

    def test_pcoa_from_distance_matrix(self, synthetic_dataset):
        abundance, _, _ = synthetic_dataset
        dm = calculate_beta_diversity(abundance)
        result = ordinate(distance_matrix=dm, method="PCoA")
        assert list(result.coordinates.columns) == ["PC1", "PC2"]
        assert list(result.coordinates.index) == list(abundance.columns)
        assert result.proportion_explained.iloc[0] >= result.proportion_explained.iloc[1]

    def test_pcoa_from_abundance(self, synthetic_dataset):
        abundance, _, _ = synthetic_dataset
        result = ordinate(abundance_df=abundance, method="PCoA", n_components=3)
        assert result.coordinates.shape == (abundance.shape[1], 3)

    def test_pca(self, synthetic_dataset):
        abundance, _, _ = synthetic_dataset
        result = ordinate(abundance_df=abundance, method="PCA")
        assert result.coordinates.shape == (abundance.shape[1], 2)
        assert result.proportion_explained.sum() <= 1.0
        assert result.method == "PCA"

    def test_pca_needs_abundance(self, small_abundance):
        dm = calculate_beta_diversity(small_abundance)
        with pytest.raises(ValueError, match="PCA needs"):
            ordinate(distance_matrix=dm, method="PCA")

    def test_unknown_method(self, small_abundance):
        with pytest.raises(ValueError, match="Unsupported ordination method"):
            ordinate(abundance_df=small_abundance, method="NMDS")
