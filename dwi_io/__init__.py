# __init__.py for dwiconvert.dwi_io

from .errors import (
    DWIConvertError,
    StructuralInconsistencyError,
    CountMismatchError,
    UnrecognizedOutputFormatError,
    IOFailureError
)

from .volume_structure import (
    VolumeStructure,
    analyze_volume_structure,
    deinterleave_volume
)

from .orientation import (
    compute_lps_direction_cosines,
    determine_slice_order_is,
    apply_slice_order
)

from .gradients import (
    GradientTable,
    compute_scale_factors,
    normalize_gradient_directions,
    recover_unit_directions,
    read_gradient_vector_file
)

from .dataset import DWIDataset
from .vendors import Vendor, detect_vendor, get_vendor_extractor
from .dicom_utils import read_dicom_series, extract_slice_metadata, assemble_volume
from .nrrd_utils import format_double, make_file_comment, write_dwi_nrrd, read_nrrd_dataset
from .fsl_utils import write_fsl_formatted_file_set, read_fsl_dataset

from .converter import (
    DWICONVERT_VERSION as __version__,
    DEFAULT_CONVERSION_OPTIONS,
    resolve_conversion_options,
    convert_dicom_to_dataset,
    write_dwi_dataset
)

__all__ = [
    'DWIConvertError',
    'StructuralInconsistencyError',
    'CountMismatchError',
    'UnrecognizedOutputFormatError',
    'IOFailureError',
    'VolumeStructure',
    'analyze_volume_structure',
    'deinterleave_volume',
    'compute_lps_direction_cosines',
    'determine_slice_order_is',
    'apply_slice_order',
    'GradientTable',
    'compute_scale_factors',
    'normalize_gradient_directions',
    'recover_unit_directions',
    'read_gradient_vector_file',
    'DWIDataset',
    'Vendor',
    'detect_vendor',
    'get_vendor_extractor',
    'read_dicom_series',
    'extract_slice_metadata',
    'assemble_volume',
    'format_double',
    'make_file_comment',
    'write_dwi_nrrd',
    'read_nrrd_dataset',
    'write_fsl_formatted_file_set',
    'read_fsl_dataset',
    'DEFAULT_CONVERSION_OPTIONS',
    'resolve_conversion_options',
    'convert_dicom_to_dataset',
    'write_dwi_dataset',
]
