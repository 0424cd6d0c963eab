import logging

from .dataset import DWIDataset
from .dicom_utils import assemble_volume, extract_slice_metadata, extract_spacing, read_dicom_series
from .errors import UnrecognizedOutputFormatError
from .fsl_utils import has_valid_nifti_extension, write_fsl_formatted_file_set
from .gradients import (DEFAULT_SMALL_GRADIENT_THRESHOLD, GradientTable, load_gradient_override,
                        normalize_gradient_directions)
from .nrrd_utils import make_file_comment, write_dwi_nrrd
from .orientation import apply_slice_order, compute_lps_direction_cosines, determine_slice_order_is
from .vendors import detect_vendor, get_vendor_extractor
from .volume_structure import analyze_volume_structure, deinterleave_volume

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

DWICONVERT_VERSION = '0.1.0'

DEFAULT_CONVERSION_OPTIONS = {
    'use_identity_measurement_frame': False,
    'use_bmatrix_gradient_directions': False,
    'small_gradient_threshold': DEFAULT_SMALL_GRADIENT_THRESHOLD,
    'gradient_vector_file': None,
    'vendor': None, # None: detect from the Manufacturer tag
}

NRRD_EXTENSIONS = ('.nrrd', '.nhdr')


def resolve_conversion_options(overrides: dict = None) -> dict:
    """
    Merges `overrides` into the default conversion options.

    Keys whose value is None keep their default.

    Raises:
        ValueError: If `overrides` holds an unknown option name.
    """
    options = dict(DEFAULT_CONVERSION_OPTIONS)
    for key, value in (overrides or {}).items():
        if key not in DEFAULT_CONVERSION_OPTIONS:
            raise ValueError(f"Unknown conversion option '{key}'. "
                             f"Valid options: {sorted(DEFAULT_CONVERSION_OPTIONS)}")
        if value is not None:
            options[key] = value
    options['small_gradient_threshold'] = float(options['small_gradient_threshold'])
    return options


def convert_dicom_to_dataset(dicom_dir: str, **options) -> DWIDataset:
    """
    Runs the DICOM to DWIDataset pipeline.

    Steps: read and sort the series, assemble the voxel buffer, infer the
    volume structure, de-interleave if needed, resolve the orientation and
    slice order, then build the gradient table.

    Args:
        dicom_dir (str): Directory holding one DWI series.
        **options: Any key of `DEFAULT_CONVERSION_OPTIONS`.

    Returns:
        DWIDataset: The assembled dataset.

    Raises:
        DWIConvertError: Any structural, count or I/O failure along the way.
    """
    opts = resolve_conversion_options(options)

    datasets = read_dicom_series(dicom_dir)
    series = extract_slice_metadata(datasets)
    data = assemble_volume(series)

    structure = analyze_volume_structure(series.location_strings, single_file=series.single_file)
    if structure.is_interleaved:
        data = deinterleave_volume(data, structure.slices_per_volume)

    ref_ds = series.reference
    spacing = extract_spacing(ref_ds)
    origin = series.origins[0]
    direction = compute_lps_direction_cosines(series.slices[0].image_orientation)

    vendor = opts['vendor'] or detect_vendor(ref_ds)
    extractor = get_vendor_extractor(vendor, opts['use_bmatrix_gradient_directions'])
    logger.info(f"Using {extractor.vendor.value} diffusion extraction.")

    slice_order_is = extractor.known_slice_order_is
    if slice_order_is is None:
        slice_order_is = determine_slice_order_is(series.origins, direction, spacing,
                                                  structure.is_interleaved, structure.n_volumes)
    direction = apply_slice_order(direction, slice_order_is)

    vectors, bvalues, measurement_frame = extractor.extract_gradient_table(
        series.slice_headers, structure, direction)
    threshold = opts['small_gradient_threshold']
    gradients = GradientTable(normalize_gradient_directions(vectors, threshold), bvalues,
                              measurement_frame, opts['use_identity_measurement_frame'])
    if opts['gradient_vector_file']:
        logger.info(f"Overriding gradient directions from {opts['gradient_vector_file']}")
        gradients = load_gradient_override(gradients, opts['gradient_vector_file'], threshold)

    metadata = extractor.extract_vendor_flags(series.slice_headers, ref_ds)
    metadata.update({
        'SliceOrderIS': bool(slice_order_is),
        'SliceInterleaved': structure.is_interleaved,
        'UseIdentityMeasurementFrame': bool(opts['use_identity_measurement_frame']),
        'SmallGradientThreshold': threshold,
        'source_format': 'DICOM',
    })

    dataset = DWIDataset(data, spacing, origin, direction, structure.slices_per_volume, gradients, metadata)
    logger.info(f"Assembled {dataset!r}")
    return dataset


def output_format(output_path: str) -> str:
    """'nrrd' or 'fsl', chosen from the output extension."""
    if output_path.endswith(NRRD_EXTENSIONS):
        return 'nrrd'
    if has_valid_nifti_extension(output_path):
        return 'fsl'
    raise UnrecognizedOutputFormatError(
        f"Unrecognized output format for '{output_path}'. Use .nrrd, .nhdr, .nii or .nii.gz."
    )


def write_dwi_dataset(dataset: DWIDataset, output_path: str,
                      output_bval_file: str = None, output_bvec_file: str = None,
                      json_sidecar_file: str = None) -> None:
    """
    Writes `dataset` in the format selected by the extension of `output_path`.

    .nrrd and .nhdr produce NRRD; .nii and .nii.gz produce the FSL file set.

    Raises:
        UnrecognizedOutputFormatError: For any other extension.
    """
    fmt = output_format(output_path)
    if fmt == 'nrrd':
        comment = make_file_comment(
            DWICONVERT_VERSION,
            use_bmatrix_gradient_directions=bool(dataset.metadata.get('UseBMatrixGradientDirections', False)),
            use_identity_measurement_frame=dataset.gradients.use_identity_measurement_frame,
            small_gradient_threshold=dataset.metadata.get('SmallGradientThreshold',
                                                          DEFAULT_SMALL_GRADIENT_THRESHOLD),
        )
        write_dwi_nrrd(dataset, output_path, comment)
    else:
        write_fsl_formatted_file_set(dataset, output_path, output_bval_file, output_bvec_file,
                                     json_sidecar_file=json_sidecar_file)
