import logging
from typing import NamedTuple, Sequence

import numpy as np

from .errors import StructuralInconsistencyError

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')


class VolumeStructure(NamedTuple):
    """Slice/volume layout discovered from a flat list of slices."""
    slices_per_volume: int
    n_volumes: int
    is_interleaved: bool

    @property
    def total_slices(self) -> int:
        return self.slices_per_volume * self.n_volumes


def compute_location_indices(location_strings: Sequence[str]) -> tuple[list[int], int]:
    """
    Maps each slice location string to an integer index in first-seen order.

    Args:
        location_strings (Sequence[str]): One location key per slice, in file order.

    Returns:
        tuple:
            - indices (list[int]): Location index of every slice.
            - n_distinct (int): Number of distinct locations.
    """
    location_index: dict[str, int] = {}
    indices = []
    for location in location_strings:
        if location not in location_index:
            location_index[location] = len(location_index)
        indices.append(location_index[location])
    return indices, len(location_index)


def analyze_volume_structure(location_strings: Sequence[str],
                             single_file: bool = False) -> VolumeStructure:
    """
    Infers slices-per-volume, number of volumes and the interleaving mode.

    The number of distinct location strings is the number of slices in one
    volume. Slices are considered slice-interleaved (all copies of location 0
    first, then all copies of location 1, ...) when the first two slices share
    a location.

    Args:
        location_strings (Sequence[str]): Location key of every slice, in file order.
        single_file (bool): True when all slices come from one multi-frame file.
            Such data is always volume-interleaved, so detection is skipped.

    Returns:
        VolumeStructure: The discovered layout.

    Raises:
        StructuralInconsistencyError: If there are no slices, or the slice
            count is not a multiple of the number of distinct locations.
    """
    n_slices = len(location_strings)
    if n_slices == 0:
        raise StructuralInconsistencyError("No slices were provided.")

    indices, slices_per_volume = compute_location_indices(location_strings)

    if n_slices % slices_per_volume != 0:
        logger.error(f"Number of slices ({n_slices}) is not evenly divisible by "
                     f"the number of slice locations ({slices_per_volume}).")
        raise StructuralInconsistencyError(
            f"Missing slice files: number of slices ({n_slices}) not evenly divisible "
            f"by the number of slice locations ({slices_per_volume})."
        )
    n_volumes = n_slices // slices_per_volume
    logger.info(f"Detected {slices_per_volume} slices per volume and {n_volumes} volumes.")

    is_interleaved = False
    # With one slice per volume the permutation is the identity.
    if not single_file and n_slices >= 2 and slices_per_volume > 1:
        if indices[0] != indices[1]:
            logger.info("Slices are ordered in a volume interleaving way.")
        else:
            logger.info("Slices are ordered in a slice interleaving way.")
            is_interleaved = True

    return VolumeStructure(slices_per_volume, n_volumes, is_interleaved)


def deinterleave_permutation(slices_per_volume: int, n_volumes: int) -> np.ndarray:
    """
    Source slice index for every destination slice index.

    The slice at source position ``m * n_volumes + k`` (slice ``m`` of volume
    ``k``) is moved to destination position ``k * slices_per_volume + m``.
    """
    return np.arange(slices_per_volume * n_volumes).reshape(slices_per_volume, n_volumes).T.ravel()


def deinterleave_volume(data: np.ndarray, slices_per_volume: int) -> np.ndarray:
    """
    Reorders a slice-interleaved voxel buffer into volume-interleaved order, in place.

    The buffer is processed one x-slab at a time, so only ``rows * N`` voxels
    are held in addition to the buffer itself.

    Args:
        data (np.ndarray): Voxel buffer of shape (cols, rows, N), slice axis last.
        slices_per_volume (int): Number of distinct slice locations.

    Returns:
        np.ndarray: The same buffer, now volume-interleaved.

    Raises:
        StructuralInconsistencyError: If N is not a multiple of slices_per_volume.
    """
    if data.ndim != 3:
        raise ValueError(f"Expected a 3D voxel buffer, got {data.ndim}D.")
    n_slices = data.shape[2]
    if slices_per_volume <= 0 or n_slices % slices_per_volume != 0:
        raise StructuralInconsistencyError(
            f"Cannot de-interleave {n_slices} slices into volumes of {slices_per_volume} slices."
        )
    n_volumes = n_slices // slices_per_volume
    order = deinterleave_permutation(slices_per_volume, n_volumes)

    for x in range(data.shape[0]):
        data[x] = data[x][:, order]

    logger.info(f"De-interleaved {n_slices} slices into {n_volumes} volumes of {slices_per_volume} slices.")
    return data
