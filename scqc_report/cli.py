# scqc_report/cli.py

import argparse
import logging
import sys
from pathlib import Path
import yaml

from .workflow import QcReportWorkflow
from .exceptions import QcReportError
from .visualization.plotting import LEGEND_POSITIONS

log = logging.getLogger("scqc_report.cli")

DEFAULTS = {
    'id': "scqc",
    'phenoid': None,
    'nrw': 1,
    'lps': "bottom",
    'level': "gene",
    'control_prefix': "ERCC-",
    'min_features': 5,
    'percent_top': 200,
    'jitter_sd': 1e-4,
    'n_pca_comps': 50,
    'random_seed': 0,
    'plot_format': "png",
    'plot_dpi': 150,
}


# --- Argument Parser Setup ---
def create_parser():
    parser = argparse.ArgumentParser(
        description="Render a single-cell RNA-seq quality control report.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    # --- Input/Output Arguments ---
    parser.add_argument("-i", "--input-path", type=str, required=True, help="Path to the dataset (.h5ad file or directory of <level>.h5ad files).")
    parser.add_argument("-o", "--output-dir", type=str, required=True, help="Directory to save the report, plots and filtered AnnData.")
    parser.add_argument("-c", "--config", type=str, default=None, help="Path to a YAML configuration file with report parameters.")

    # --- Report Arguments ---
    parser.add_argument("--id", type=str, help="Report / dataset label, also the output file prefix.")
    parser.add_argument("--phenoid", type=str, help="Comma-separated sample annotation columns used for grouping.")
    parser.add_argument("--nrw", type=int, help="Number of legend rows.")
    parser.add_argument("--lps", type=str, choices=LEGEND_POSITIONS, help="Legend position.")
    # QC
    parser.add_argument("--level", type=str, help="Feature level to analyse.")
    parser.add_argument("--control-prefix", type=str, help="Feature name prefix of spike-in controls.")
    parser.add_argument("--min-features", type=int, help="Samples need strictly more detected features than this.")
    parser.add_argument("--percent-top", type=int, help="Number of top features for the library share metric.")
    # Embeddings
    parser.add_argument("--jitter-sd", type=float, help="Standard deviation of the jitter added to duplicated embedding input.")
    parser.add_argument("--n-pca-comps", type=int, help="Number of PCA components.")
    parser.add_argument("--random-seed", type=int, help="Random seed for PCA, t-SNE and jitter.")
    # Plotting
    parser.add_argument("--plot-dpi", type=int, help="DPI for plots.")
    parser.add_argument("--plot-format", type=str, choices=['png', 'pdf', 'svg'], help="Plot file format.")

    return parser


def _read_config(config_path: Path) -> dict:
    """Reads a YAML config; nested sections are flattened into one dict."""
    with open(config_path, 'r') as f:
        config_yaml = yaml.safe_load(f)
    config_params = {}
    if config_yaml:
        for section, params_in_section in config_yaml.items():
            if isinstance(params_in_section, dict):
                config_params.update(params_in_section)
            else:
                config_params[section] = params_in_section
    return config_params


# --- Parameter Loading and Precedence ---
def load_and_merge_params(args: argparse.Namespace) -> argparse.Namespace:
    """
    Merges parameters: defaults < YAML config file < CLI arguments.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the config file cannot be parsed.
    """
    config_params = {}
    if args.config:
        config_path = Path(args.config)
        if not config_path.is_file():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        config_params = _read_config(config_path)
        log.info(f"Loaded parameters from config file: {args.config}")

    final_params = argparse.Namespace()
    cli_args_dict = vars(args)

    for key, default_value in DEFAULTS.items():
        param_value = default_value

        config_value = config_params.get(key)
        if config_value is not None:
            param_value = None if str(config_value).lower() == 'null' else config_value

        cli_value = cli_args_dict.get(key)
        if cli_value is not None:
            param_value = cli_value

        if key == 'phenoid' and isinstance(param_value, str):
            param_value = [f.strip() for f in param_value.split(',') if f.strip()]

        setattr(final_params, key, param_value)

    final_params.input_path = args.input_path
    final_params.output_dir = args.output_dir

    log.debug(f"Final parameters after merge: {vars(final_params)}")
    return final_params


def run_pipeline(params) -> int:
    """Runs the report and maps failures to an exit status."""
    try:
        workflow = QcReportWorkflow(params)
        workflow.run()
        log.info(f"Report finished: {workflow.report_path}")
        return 0
    except QcReportError as e:
        log.critical(f"Report aborted: {e}")
        return 1
    except Exception:
        log.critical("Report execution failed. See previous logs for details.")
        return 1


# --- Entry Point ---
def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    parser = create_parser()
    args = parser.parse_args(argv)
    try:
        final_params = load_and_merge_params(args)
    except (FileNotFoundError, yaml.YAMLError) as e:
        log.error(f"Could not read config file: {e}")
        sys.exit(1)
    sys.exit(run_pipeline(final_params))


if __name__ == "__main__":
    main()
