import os
import math
import logging

import numpy as np
import nrrd # For reading NRRD files back

from .dataset import DWIDataset
from .errors import IOFailureError, StructuralInconsistencyError
from .gradients import DEFAULT_SMALL_GRADIENT_THRESHOLD, GradientTable, recover_unit_directions

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

NRRD_MAGIC = 'NRRD0005'
DETACHED_HEADER_EXTENSION = '.nhdr'
PROJECT_URL = 'https://github.com/dwiconvert/dwiconvert'


def format_double(value: float) -> str:
    """
    Canonical float to string conversion used for every number in a NRRD header.

    17 significant digits in scientific notation; NaN is written as ``NaN``.
    """
    value = float(value)
    if math.isnan(value):
        return 'NaN'
    return '%.16e' % value


def _format_vector(vector) -> str:
    return '(' + ','.join(format_double(v) for v in vector) + ')'


def _format_matrix_columns(matrix) -> str:
    matrix = np.asarray(matrix, dtype=float)
    return ' '.join(_format_vector(matrix[:, i]) for i in range(3))


def make_file_comment(version: str,
                      use_bmatrix_gradient_directions: bool = False,
                      use_identity_measurement_frame: bool = False,
                      small_gradient_threshold: float = DEFAULT_SMALL_GRADIENT_THRESHOLD) -> str:
    """Provenance comment block placed right after the NRRD magic line."""
    lines = [
        '#',
        '#',
        f'# This file was created by dwiconvert version {version}',
        f'# {PROJECT_URL}',
        '# part of the dwiconvert package.',
        '# Command line options:',
        f'# --smallGradientThreshold {format_double(small_gradient_threshold)}',
    ]
    if use_identity_measurement_frame:
        lines.append('# --useIdentityMeasurementFrame')
    if use_bmatrix_gradient_directions:
        lines.append('# --useBMatrixGradientDirections')
    return '\n'.join(lines) + '\n'


def detached_data_filename(output_header_path: str) -> str | None:
    """Raw sidecar path for a detached (.nhdr) header, or None for a single-file NRRD."""
    extension_pos = output_header_path.find(DETACHED_HEADER_EXTENSION)
    if extension_pos == -1:
        return None
    return output_header_path[:extension_pos] + '.raw'


def build_nrrd_header(dataset: DWIDataset, comment: str, data_filename: str | None = None) -> str:
    """
    Builds the NRRD header text for a diffusion dataset.

    Args:
        dataset (DWIDataset): The dataset to describe.
        comment (str): Comment block (see `make_file_comment`).
        data_filename (str, optional): Basename of the raw sidecar in split mode.

    Returns:
        str: Header text including the terminating blank line.
    """
    gradients = dataset.gradients
    space_directions = dataset.space_directions

    header = NRRD_MAGIC + '\n' + comment
    lines = []
    if data_filename is not None:
        lines.append(f'content: exists({data_filename},0)')
    lines.append('type: short')
    lines.append('dimension: 4')
    lines.append(f'space: {dataset.space}')
    lines.append(f'sizes: {dataset.cols} {dataset.rows} {dataset.slices_per_volume} {dataset.n_volumes}')
    lines.append(f'thicknesses:  NaN  NaN {format_double(dataset.spacing[2])} NaN')
    lines.append(f'space directions: {_format_matrix_columns(space_directions)} none')
    lines.append('centerings: cell cell cell ???')
    lines.append('kinds: space space space list')
    lines.append('endian: little')
    lines.append('encoding: raw')
    lines.append('space units: "mm" "mm" "mm"')
    lines.append(f'space origin: {_format_vector(dataset.origin)} ')
    if data_filename is not None:
        lines.append(f'data file: {data_filename}')
    lines.append(f'measurement frame: {_format_matrix_columns(gradients.operative_measurement_frame)}')
    lines.append('modality:=DWMRI')
    # Nominal b-value, i.e. the largest one.
    lines.append(f'DWMRI_b-value:={format_double(gradients.max_bvalue)}')
    for k, vec in enumerate(gradients.output_vectors):
        lines.append(f'DWMRI_gradient_{k:04d}:=' + '   '.join(format_double(v) for v in vec))

    return header + '\n'.join(lines) + '\n\n'


def voxel_bytes(dataset: DWIDataset) -> bytes:
    """Little-endian int16 payload, x fastest: (x, y, slice, volume) order."""
    return np.asarray(dataset.data, dtype='<i2').tobytes(order='F')


def write_dwi_nrrd(dataset: DWIDataset, output_header_path: str, comment: str) -> str | None:
    """
    Writes a diffusion dataset as NRRD.

    A ``.nhdr`` filename produces a detached header plus a ``.raw`` data file;
    any other name produces a single file with the raw payload appended.

    Args:
        dataset (DWIDataset): Dataset to write.
        output_header_path (str): Output .nrrd or .nhdr path.
        comment (str): Comment block for the header.

    Returns:
        str | None: Path of the raw data file in split mode, else None.

    Raises:
        IOFailureError: If a file cannot be written.
    """
    data_path = detached_data_filename(output_header_path)
    data_filename = os.path.basename(data_path) if data_path else None
    header_text = build_nrrd_header(dataset, comment, data_filename)
    payload = voxel_bytes(dataset)

    output_dir = os.path.dirname(output_header_path)
    try:
        if output_dir and not os.path.exists(output_dir):
            os.makedirs(output_dir, exist_ok=True)
            logger.info(f"Created output directory: {output_dir}")
        with open(output_header_path, 'wb') as f:
            f.write(header_text.encode('ascii'))
            if data_path is None:
                f.write(payload)
        if data_path is not None:
            with open(data_path, 'wb') as f:
                f.write(payload)
    except OSError as e:
        logger.error(f"Failed to write NRRD file {output_header_path}: {e}")
        raise IOFailureError(f"Failed to write NRRD file {output_header_path}: {e}") from e

    logger.info(f"NRRD file saved successfully: {output_header_path}")
    if data_path is not None:
        logger.info(f"NRRD raw data saved to: {data_path}")
    return data_path


def read_nrrd_dataset(nrrd_filepath: str,
                      small_gradient_threshold: float = DEFAULT_SMALL_GRADIENT_THRESHOLD) -> DWIDataset:
    """
    Reads a 4D diffusion NRRD file into a DWIDataset.

    Gradient lines in a DWI NRRD are scaled by ``sqrt(b / b_nominal)``, so
    each b-value is recovered as ``b_nominal * |g|^2`` and the unit direction
    as ``g / |g|``.

    Args:
        nrrd_filepath (str): Path to a .nrrd or .nhdr file.
        small_gradient_threshold (float): Norm below which the gradient of a
            zero b-value volume is a baseline.

    Returns:
        DWIDataset: The dataset, with the voxel buffer flattened to (x, y, slice index).

    Raises:
        IOFailureError: If the file is missing or cannot be parsed.
        StructuralInconsistencyError: If the file is not a 4D diffusion volume.
    """
    if not os.path.exists(nrrd_filepath):
        logger.error(f"NRRD file not found: {nrrd_filepath}")
        raise IOFailureError(f"NRRD file not found: {nrrd_filepath}")

    try:
        data, header = nrrd.read(nrrd_filepath)
        logger.info(f"Successfully read NRRD file: {nrrd_filepath}")
    except (nrrd.NRRDError, OSError) as e:
        logger.error(f"Failed to read NRRD file {nrrd_filepath}: {e}")
        raise IOFailureError(f"Failed to read NRRD file {nrrd_filepath}: {e}") from e

    if data.ndim != 4:
        raise StructuralInconsistencyError(f"Expected 4D DWI NRRD data, but got {data.ndim}D data.")

    kinds = list(header.get('kinds', ['space', 'space', 'space', 'list']))
    list_axis = next((i for i, kind in enumerate(kinds) if kind not in ('space', 'domain')), 3)
    if list_axis != 3:
        logger.info(f"Moving gradient axis {list_axis} to the last position.")
        data = np.moveaxis(data, list_axis, 3)
    spatial_axes = [i for i in range(4) if i != list_axis]

    space_directions = np.asarray(header.get('space directions'), dtype=float)
    if space_directions.ndim != 2 or space_directions.shape[1] != 3:
        raise StructuralInconsistencyError("NRRD 'space directions' must hold 3-vectors.")
    space_directions = space_directions[spatial_axes]
    spacing = np.linalg.norm(space_directions, axis=1)
    direction = (space_directions / spacing[:, np.newaxis]).T
    origin = np.asarray(header.get('space origin', np.zeros(3)), dtype=float)

    # pynrrd returns one row per column vector of the frame.
    measurement_frame = np.asarray(header.get('measurement frame', np.eye(3)), dtype=float).T

    space = header.get('space', 'left-posterior-superior')
    if space in ('right-anterior-superior', 'RAS'):
        logger.info("Converting RAS NRRD geometry to LPS.")
        flip = np.diag([-1.0, -1.0, 1.0])
        direction = flip @ direction
        origin = flip @ origin
        measurement_frame = flip @ measurement_frame

    gradient_keys = sorted(key for key in header if key.startswith('DWMRI_gradient_'))
    n_volumes = data.shape[3]
    if len(gradient_keys) != n_volumes:
        raise StructuralInconsistencyError(
            f"Number of DWMRI_gradient entries ({len(gradient_keys)}) does not match "
            f"the number of volumes ({n_volumes})."
        )
    raw_vectors = np.array([[float(p) for p in str(header[key]).split()[:3]] for key in gradient_keys])
    nominal_bvalue = float(header.get('DWMRI_b-value', 0.0))
    # A frame-rotated vector keeps its length, so b-values come from the stored vectors.
    bvalues = np.round(nominal_bvalue * np.sum(raw_vectors ** 2, axis=1), 6)
    frame_vectors = raw_vectors @ measurement_frame.T
    unit_vectors = recover_unit_directions(frame_vectors, bvalues, small_gradient_threshold)
    gradients = GradientTable(unit_vectors, bvalues, measurement_frame)

    cols, rows, slices_per_volume = data.shape[:3]
    flat = np.asarray(data, dtype=np.int16).reshape((cols, rows, slices_per_volume * n_volumes), order='F')
    return DWIDataset(np.asfortranarray(flat), spacing, origin, direction, slices_per_volume, gradients,
                      metadata={'source_format': 'NRRD'})
