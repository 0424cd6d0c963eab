import argparse
import sys
import logging

from dwi_io.converter import (DEFAULT_CONVERSION_OPTIONS, convert_dicom_to_dataset, output_format,
                              resolve_conversion_options, write_dwi_dataset)
from dwi_io.errors import DWIConvertError, UnrecognizedOutputFormatError
from dwi_io.fsl_utils import read_fsl_dataset
from dwi_io.nrrd_utils import read_nrrd_dataset
from cli.cli_utils import (add_common_args, add_conversion_option_args, add_fsl_output_args,
                           configure_logging, load_config_from_json_yaml, merge_config_and_args)

logger = logging.getLogger(__name__)


def _load_options(args) -> dict:
    config = load_config_from_json_yaml(args.config) if args.config else {}
    # Reject unknown keys before anything is read.
    resolve_conversion_options(config)
    return resolve_conversion_options(
        merge_config_and_args(config, args, list(DEFAULT_CONVERSION_OPTIONS)))


def _require_format(output_path: str, expected: str):
    if output_format(output_path) != expected:
        raise UnrecognizedOutputFormatError(
            f"Output '{output_path}' does not match the {expected.upper()} output of this command."
        )


def _write(dataset, args):
    write_dwi_dataset(
        dataset, args.output_volume,
        output_bval_file=getattr(args, 'output_bval', None),
        output_bvec_file=getattr(args, 'output_bvec', None),
        json_sidecar_file=getattr(args, 'json_sidecar', None),
    )


def setup_dicom_to_nrrd_parser(parser: argparse.ArgumentParser):
    parser.add_argument('--input_dicom_dir', required=True, help="Directory containing the DWI DICOM series.")
    parser.add_argument('--output_volume', required=True, help="Output .nrrd or .nhdr file.")
    add_conversion_option_args(parser)
    add_common_args(parser)
    parser.set_defaults(func=run_dicom_to_nrrd)

def run_dicom_to_nrrd(args, options):
    _require_format(args.output_volume, 'nrrd')
    dataset = convert_dicom_to_dataset(args.input_dicom_dir, **options)
    _write(dataset, args)
    print(f"DICOM to NRRD conversion successful: {args.output_volume}")


def setup_dicom_to_fsl_parser(parser: argparse.ArgumentParser):
    parser.add_argument('--input_dicom_dir', required=True, help="Directory containing the DWI DICOM series.")
    parser.add_argument('--output_volume', required=True, help="Output .nii or .nii.gz file.")
    add_fsl_output_args(parser)
    add_conversion_option_args(parser)
    add_common_args(parser)
    parser.set_defaults(func=run_dicom_to_fsl)

def run_dicom_to_fsl(args, options):
    _require_format(args.output_volume, 'fsl')
    dataset = convert_dicom_to_dataset(args.input_dicom_dir, **options)
    _write(dataset, args)
    print(f"DICOM to FSL conversion successful: {args.output_volume}")


def setup_nrrd_to_fsl_parser(parser: argparse.ArgumentParser):
    parser.add_argument('--input_nrrd', required=True, help="Path to the input DWI NRRD (.nrrd or .nhdr).")
    parser.add_argument('--output_volume', required=True, help="Output .nii or .nii.gz file.")
    add_fsl_output_args(parser)
    parser.add_argument('--smallGradientThreshold', dest='small_gradient_threshold', type=float, default=None,
                        help="Gradients with a norm at or below this are baselines.")
    add_common_args(parser)
    parser.set_defaults(func=run_nrrd_to_fsl)

def run_nrrd_to_fsl(args, options):
    _require_format(args.output_volume, 'fsl')
    dataset = read_nrrd_dataset(args.input_nrrd, options['small_gradient_threshold'])
    _write(dataset, args)
    print(f"NRRD to FSL conversion successful: {args.output_volume}")


def setup_fsl_to_nrrd_parser(parser: argparse.ArgumentParser):
    parser.add_argument('--input_nifti', required=True, help="Path to the input 4D NIfTI file.")
    parser.add_argument('--input_bval', help="Input b-values file (default: input name with .bval).")
    parser.add_argument('--input_bvec', help="Input b-vectors file (default: input name with .bvec).")
    parser.add_argument('--output_volume', required=True, help="Output .nrrd or .nhdr file.")
    parser.add_argument('--smallGradientThreshold', dest='small_gradient_threshold', type=float, default=None,
                        help="Gradients with a norm at or below this are baselines.")
    add_common_args(parser)
    parser.set_defaults(func=run_fsl_to_nrrd)

def run_fsl_to_nrrd(args, options):
    _require_format(args.output_volume, 'nrrd')
    dataset = read_fsl_dataset(args.input_nifti, args.input_bval, args.input_bvec,
                               options['small_gradient_threshold'])
    _write(dataset, args)
    print(f"FSL to NRRD conversion successful: {args.output_volume}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='dwiconvert',
        description="Convert diffusion-weighted DICOM series to NRRD or NIfTI/FSL, and between the two.",
        formatter_class=argparse.RawTextHelpFormatter
    )
    subparsers = parser.add_subparsers(title="Available Commands", dest="command")
    subparsers.required = True

    setup_dicom_to_nrrd_parser(subparsers.add_parser(
        "dicom2nrrd",
        help="Convert a DWI DICOM series to NRRD.",
        description="Reads a DWI DICOM series and writes a DWMRI NRRD (.nrrd, or .nhdr + .raw)."
    ))
    setup_dicom_to_fsl_parser(subparsers.add_parser(
        "dicom2fsl",
        help="Convert a DWI DICOM series to NIfTI + FSL bval/bvec.",
        description="Reads a DWI DICOM series and writes a 4D NIfTI image with .bval/.bvec files."
    ))
    setup_nrrd_to_fsl_parser(subparsers.add_parser(
        "nrrd2fsl",
        help="Convert a DWI NRRD to NIfTI + FSL bval/bvec.",
        description="Reads a DWMRI NRRD file and writes a 4D NIfTI image with .bval/.bvec files."
    ))
    setup_fsl_to_nrrd_parser(subparsers.add_parser(
        "fsl2nrrd",
        help="Convert NIfTI + FSL bval/bvec to a DWI NRRD.",
        description="Reads a 4D NIfTI image with .bval/.bvec files and writes a DWMRI NRRD."
    ))
    return parser


def main(argv=None):
    parser = build_parser()
    if argv is None and len(sys.argv) <= 1:
        parser.print_help(sys.stderr)
        sys.exit(1)

    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        options = _load_options(args)
        args.func(args, options)
    except (DWIConvertError, ValueError, OSError) as e:
        logger.debug("Conversion failed.", exc_info=True)
        print(f"Error during {args.command} conversion: {e}", file=sys.stderr)
        sys.exit(1)

if __name__ == '__main__':
    main()
