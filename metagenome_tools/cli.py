# metagenome_tools/cli.py

import argparse
import logging
import os
import sys
from dataclasses import replace

import matplotlib.pyplot as plt

from .classify import knn_validate_clusters, lasso_cross_validation
from .config import default_config, load_config
from .errors import ScreeningError
from .parser import align_metadata, load_abundance_table, load_metadata, relative_abundance
from .stats import (
    calculate_beta_diversity,
    differential_abundance_analysis,
    ordinate,
    results_to_dataframe,
    screen_associations,
)
from .viz import (
    plot_feature_boxplots,
    plot_ordination,
    plot_relative_abundance_heatmap,
    plot_roc_curve,
)

logger = logging.getLogger(__name__)


def _load_inputs(args):
    abundance_df = load_abundance_table(args.abundance_file)
    metadata_df = load_metadata(args.metadata_file, args.sample_id_col)

    if args.group_var not in metadata_df.columns:
        raise ValueError(f"Variable '{args.group_var}' not found in metadata")

    if args.relative:
        abundance_df = relative_abundance(abundance_df)

    print(f"Loaded {abundance_df.shape[0]} features across {abundance_df.shape[1]} samples")
    return abundance_df, metadata_df


def _safe_name(value):
    return str(value).replace(' ', '_').replace('/', '_')


def run_screen(args, config):
    """Screen features for association with a grouping or covariate."""
    screening = config['screening']
    overrides = {
        'abundance_cutoff': args.abundance_cutoff,
        'alpha': args.alpha,
        'test_variant': args.variant,
        'n_workers': args.workers,
    }
    screening = replace(screening, **{k: v for k, v in overrides.items() if v is not None})

    abundance_df, metadata_df = _load_inputs(args)

    print(f"Screening features against {args.group_var} ({screening.test_variant})...")
    results = screen_associations(abundance_df, metadata_df, args.group_var, config=screening)

    significant_df = results_to_dataframe(results)
    significant_file = os.path.join(args.output_dir, f"significant_{_safe_name(args.group_var)}.csv")
    significant_df.to_csv(significant_file, index=False)
    print(f"{len(results)} features significant at alpha={screening.alpha}; "
          f"saved to {significant_file}")

    method = 'wilcoxon' if screening.test_variant == 'two_group' else 'spearman'
    all_df = differential_abundance_analysis(
        abundance_df, metadata_df, args.group_var, method=method,
        abundance_cutoff=screening.abundance_cutoff, n_workers=screening.n_workers
    )
    all_file = os.path.join(args.output_dir, f"associations_{_safe_name(args.group_var)}.csv")
    all_df.to_csv(all_file, index=False)
    print(f"Results for all {len(all_df)} tested features saved to {all_file}")

    if args.plot and results and screening.test_variant == 'two_group':
        features = [r.feature_id for r in results[:args.top_n]]
        fig = plot_feature_boxplots(abundance_df, metadata_df, args.group_var, features)
        plot_file = os.path.join(args.output_dir, f"significant_{_safe_name(args.group_var)}_boxplots.png")
        fig.savefig(plot_file, dpi=300, bbox_inches='tight')
        plt.close(fig)
        print(f"Boxplots saved to {plot_file}")

    return results


def run_ordinate(args, config):
    """Compute sample dissimilarities and an ordination."""
    options = dict(config['ordination'])
    if args.metric is not None:
        options['metric'] = args.metric
    if args.method is not None:
        options['method'] = args.method

    abundance_df, metadata_df = _load_inputs(args)

    if options['method'] == 'PCoA':
        print(f"Calculating {options['metric']} distances...")
        distance_matrix = calculate_beta_diversity(abundance_df, metric=options['metric'])
        result = ordinate(distance_matrix=distance_matrix, method='PCoA',
                          n_components=options['n_components'])
    else:
        result = ordinate(abundance_df=abundance_df, method=options['method'],
                          n_components=options['n_components'])

    prefix = f"{options['method'].lower()}_{_safe_name(args.group_var)}"
    coordinates_file = os.path.join(args.output_dir, f"{prefix}_coordinates.csv")
    result.coordinates.to_csv(coordinates_file)
    print(f"Ordination coordinates saved to {coordinates_file}")

    fig = plot_ordination(result, metadata_df, args.group_var)
    plot_file = os.path.join(args.output_dir, f"{prefix}.png")
    fig.savefig(plot_file, dpi=300, bbox_inches='tight')
    plt.close(fig)
    print(f"Ordination plot saved to {plot_file}")

    return result


def run_classify(args, config):
    """Validate groups with kNN and estimate LASSO prediction performance."""
    options = dict(config['classification'])
    for key in ('n_neighbors', 'n_folds', 'n_repeats'):
        if getattr(args, key) is not None:
            options[key] = getattr(args, key)

    abundance_df, metadata_df = _load_inputs(args)
    labels = align_metadata(abundance_df, metadata_df)[args.group_var]

    print("Running kNN cluster validation...")
    distance_matrix = calculate_beta_diversity(abundance_df, metric=config['ordination']['metric'])
    knn = knn_validate_clusters(distance_matrix, labels, n_neighbors=options['n_neighbors'])

    print("Running LASSO cross-validation...")
    lasso = lasso_cross_validation(
        abundance_df, labels,
        positive_class=args.positive_class,
        n_folds=options['n_folds'],
        n_repeats=options['n_repeats'],
        C=options['C'],
        seed=options['seed'],
    )

    name = _safe_name(args.group_var)
    summary_file = os.path.join(args.output_dir, f"classification_{name}_summary.txt")
    with open(summary_file, 'w') as f:
        f.write(f"knn neighbors: {options['n_neighbors']}\n")
        f.write(f"knn accuracy: {knn['accuracy']:.4f}\n")
        f.write(f"knn balanced accuracy: {knn['balanced_accuracy']:.4f}\n")
        f.write(f"lasso positive class: {lasso.positive_class}\n")
        f.write(f"lasso folds x repeats: {options['n_folds']} x {options['n_repeats']}\n")
        f.write(f"lasso ROC AUC: {lasso.roc_auc:.4f}\n")
        f.write(f"lasso PR AUC: {lasso.pr_auc:.4f}\n")
    print(f"Classification summary saved to {summary_file}")

    lasso.predictions.to_csv(os.path.join(args.output_dir, f"lasso_{name}_predictions.csv"))
    lasso.feature_weights.to_csv(os.path.join(args.output_dir, f"lasso_{name}_weights.csv"))

    fig = plot_roc_curve(lasso)
    plot_file = os.path.join(args.output_dir, f"lasso_{name}_roc.png")
    fig.savefig(plot_file, dpi=300, bbox_inches='tight')
    plt.close(fig)
    print(f"ROC and precision-recall curves saved to {plot_file}")

    top_features = lasso.feature_weights.index[:args.top_n]
    fig = plot_relative_abundance_heatmap(
        abundance_df.loc[top_features], metadata_df, args.group_var, top_n=None, log_std=True
    )
    heatmap_file = os.path.join(args.output_dir, f"lasso_{name}_heatmap.png")
    fig.savefig(heatmap_file, dpi=300, bbox_inches='tight')
    plt.close(fig)
    print(f"Heatmap of the top {len(top_features)} weighted features saved to {heatmap_file}")

    return knn, lasso


def _add_input_arguments(subparser):
    subparser.add_argument("--abundance-file", required=True, help="Features x samples abundance table")
    subparser.add_argument("--metadata-file", required=True, help="Path to metadata file")
    subparser.add_argument("--sample-id-col", default="SampleID", help="Metadata column with sample IDs")
    subparser.add_argument("--group-var", required=True, help="Metadata variable to test or group by")
    subparser.add_argument("--output-dir", required=True, help="Directory to save output files")
    subparser.add_argument("--relative", action="store_true",
                           help="Convert abundances to relative abundance before analysis")
    subparser.add_argument("--config", help="YAML file with analysis parameters")


def build_parser():
    parser = argparse.ArgumentParser(description="Comparative Metagenomics Analysis Tool")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    screen_parser = subparsers.add_parser("screen", help="Screen features for group or covariate association")
    _add_input_arguments(screen_parser)
    screen_parser.add_argument("--variant", choices=["two_group", "correlation"],
                               help="Mann-Whitney U between two groups or Spearman correlation")
    screen_parser.add_argument("--alpha", type=float, help="FDR significance level")
    screen_parser.add_argument("--abundance-cutoff", type=float,
                               help="Minimum abundance a feature must reach in at least one sample")
    screen_parser.add_argument("--workers", type=int, help="Worker processes for per-feature tests")
    screen_parser.add_argument("--plot", action="store_true", help="Save boxplots of significant features")
    screen_parser.add_argument("--top-n", type=int, default=9, help="Number of features to plot")

    ordinate_parser = subparsers.add_parser("ordinate", help="Ordinate samples by beta diversity")
    _add_input_arguments(ordinate_parser)
    ordinate_parser.add_argument("--metric", choices=["braycurtis", "jaccard", "euclidean"],
                                 help="Beta diversity metric for PCoA")
    ordinate_parser.add_argument("--method", choices=["PCoA", "PCA"], help="Ordination method")

    classify_parser = subparsers.add_parser("classify", help="kNN cluster validation and LASSO prediction")
    _add_input_arguments(classify_parser)
    classify_parser.add_argument("--positive-class", help="Label treated as the positive (case) class")
    classify_parser.add_argument("--n-neighbors", dest="n_neighbors", type=int, help="Neighbours for kNN")
    classify_parser.add_argument("--folds", dest="n_folds", type=int, help="Cross-validation folds")
    classify_parser.add_argument("--repeats", dest="n_repeats", type=int, help="Cross-validation repeats")
    classify_parser.add_argument("--top-n", type=int, default=20,
                                 help="Number of top weighted features in the heatmap")

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
        datefmt='%H:%M:%S'
    )

    if args.command is None:
        parser.print_help()
        return

    config = load_config(args.config) if args.config else default_config()
    logger.debug("Running %s with screening parameters %s", args.command, config['screening'])

    os.makedirs(args.output_dir, exist_ok=True)

    commands = {
        "screen": run_screen,
        "ordinate": run_ordinate,
        "classify": run_classify,
    }
    try:
        return commands[args.command](args, config)
    except ScreeningError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
