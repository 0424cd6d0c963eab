import logging
from typing import Sequence

import numpy as np

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

NRRD_SPACE_DEFINITION = 'left-posterior-superior'


def compute_lps_direction_cosines(image_orientation_patient: Sequence[float]) -> np.ndarray:
    """
    Builds a right-handed LPS direction-cosine matrix from ImageOrientationPatient.

    DICOM reports the row and column direction cosines of the image plane in
    the L-P-S patient frame. They become the first two columns; the third
    (slice normal) is their cross product.

    Args:
        image_orientation_patient (Sequence[float]): [Rx, Ry, Rz, Cx, Cy, Cz].

    Returns:
        np.ndarray: 3x3 matrix whose columns are the row, column and slice axes.
    """
    iop = np.asarray(image_orientation_patient, dtype=float)
    if iop.shape != (6,):
        raise ValueError(f"ImageOrientationPatient must have 6 values, got shape {iop.shape}.")

    direction = np.eye(3, dtype=float)
    direction[:, 0] = iop[:3]
    direction[:, 1] = iop[3:]
    direction[:, 2] = np.cross(iop[:3], iop[3:])
    logger.info(f"LPS orientation matrix:\n{direction}")
    return direction


def compute_nrrd_space_directions(direction: np.ndarray, spacing: Sequence[float]) -> np.ndarray:
    """Space directions (columns) = direction cosines scaled by voxel spacing."""
    return np.asarray(direction, dtype=float) @ np.diag(np.asarray(spacing, dtype=float))


def determine_slice_order_is(slice_origins: Sequence[Sequence[float]],
                             direction: np.ndarray,
                             spacing: Sequence[float],
                             is_interleaved: bool,
                             n_volumes: int) -> bool:
    """
    Decides whether the slice axis runs inferior to superior.

    The displacement between slice 0 and the next physically adjacent slice is
    projected on the slice axis of the space directions. In slice-interleaved
    input the adjacent slice sits ``n_volumes`` positions further in the slice
    list; otherwise it is the next one.

    Args:
        slice_origins (Sequence): Origin of every slice, in file order.
        direction (np.ndarray): 3x3 direction-cosine matrix.
        spacing (Sequence[float]): Voxel spacing (x, y, slice).
        is_interleaved (bool): Whether the input was slice-interleaved.
        n_volumes (int): Number of diffusion volumes.

    Returns:
        bool: True for IS order, False for SI.
    """
    origins = np.asarray(slice_origins, dtype=float)
    next_slice = 0
    if len(origins) > 1:
        next_slice = n_volumes if is_interleaved else 1
    if next_slice >= len(origins):
        logger.warning(f"Adjacent slice index {next_slice} is out of range for {len(origins)} slices. "
                       "Assuming IS slice order.")
        return True

    logger.debug(f"Slice 0: {origins[0]}")
    logger.debug(f"Slice {next_slice}: {origins[next_slice]}")

    displacement = origins[next_slice] - origins[0]
    space_directions = compute_nrrd_space_directions(direction, spacing)
    projection = float(displacement @ space_directions[:, 2])
    return not projection < 0


def apply_slice_order(direction: np.ndarray, slice_order_is: bool) -> np.ndarray:
    """
    Returns the direction matrix corrected for the slice order.

    For SI order the slice-axis (third) column is negated; the in-plane
    columns are left untouched. The input matrix is not modified.
    """
    corrected = np.array(direction, dtype=float, copy=True)
    if slice_order_is:
        logger.info("Slice order is IS")
    else:
        logger.info("Slice order is SI")
        corrected[:, 2] = -corrected[:, 2]
    return corrected
