import argparse
import json
import yaml # Requires PyYAML to be installed
import os
import logging

from dwi_io.gradients import DEFAULT_SMALL_GRADIENT_THRESHOLD

# --- Argument Parsing Helpers ---

def add_conversion_option_args(parser: argparse.ArgumentParser):
    """Adds the DICOM conversion options to an ArgumentParser.

    Defaults are None so that values from a --config file are only
    overridden by options actually given on the command line.
    """
    parser.add_argument('--useIdentityMeasurementFrame', dest='use_identity_measurement_frame',
                        action='store_const', const=True, default=None,
                        help="Leave gradients unrotated and report an identity measurement frame.")
    parser.add_argument('--useBMatrixGradientDirections', dest='use_bmatrix_gradient_directions',
                        action='store_const', const=True, default=None,
                        help="Derive gradient directions and b-values from the DICOM B-matrix.")
    parser.add_argument('--smallGradientThreshold', dest='small_gradient_threshold', type=float, default=None,
                        help=f"Gradients with a norm at or below this are baselines "
                             f"(default: {DEFAULT_SMALL_GRADIENT_THRESHOLD}).")
    parser.add_argument('--gradientVectorFile', dest='gradient_vector_file', default=None,
                        help="Text file with replacement gradient directions (count line, then one 'x y z' per line).")
    parser.add_argument('--vendor', choices=['standard', 'ge', 'philips'], default=None,
                        help="Force the vendor-specific diffusion extraction (default: from the Manufacturer tag).")
    return parser

def add_fsl_output_args(parser: argparse.ArgumentParser):
    """Adds the FSL sidecar output arguments to an ArgumentParser."""
    parser.add_argument('--output_bval', help="Path to save the b-values (default: output name with .bval).")
    parser.add_argument('--output_bvec', help="Path to save the b-vectors (default: output name with .bvec).")
    parser.add_argument('--json_sidecar', help="Path to save dataset metadata as JSON (optional).")
    return parser

def add_common_args(parser: argparse.ArgumentParser):
    """Adds --config and --verbose to an ArgumentParser."""
    parser.add_argument('--config', help="JSON or YAML file with conversion options.")
    parser.add_argument('--verbose', action='store_true', help="Enable debug logging.")
    return parser

def configure_logging(verbose: bool = False):
    """Sets the root log level; --verbose enables DEBUG output."""
    logging.getLogger().setLevel(logging.DEBUG if verbose else logging.INFO)


# --- Configuration File Loading ---

def load_config_from_json_yaml(filepath: str) -> dict:
    """Loads parameters from a JSON or YAML configuration file."""
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"Configuration file not found: {filepath}")

    ext = os.path.splitext(filepath)[1].lower()
    config = {}
    with open(filepath, 'r') as f:
        if ext == '.json':
            config = json.load(f)
        elif ext in ['.yaml', '.yml']:
            try:
                config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Error parsing YAML file {filepath}: {e}")
        else:
            raise ValueError(f"Unsupported configuration file format: {ext}. Use .json or .yaml.")
    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ValueError(f"Configuration file {filepath} must contain a mapping of option names to values.")
    return config

def merge_config_and_args(config: dict, args: argparse.Namespace, keys) -> dict:
    """Config values for `keys`, overridden by any command-line value that is not None."""
    options = {key: config[key] for key in keys if key in config}
    for key in keys:
        value = getattr(args, key, None)
        if value is not None:
            options[key] = value
    return options
