import os
import logging
from functools import cached_property

import numpy as np
from dipy.core.gradients import gradient_table, GradientTable as DipyGradientTable

from .errors import CountMismatchError, IOFailureError

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

DEFAULT_SMALL_GRADIENT_THRESHOLD = 0.2


def _as_vector_array(vectors) -> np.ndarray:
    arr = np.asarray(vectors, dtype=float)
    if arr.size == 0:
        return arr.reshape(0, 3)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"Gradient vectors must have shape (N, 3), but got shape {arr.shape}.")
    return arr


def validate_bvalues(bvalues) -> np.ndarray:
    """Returns b-values as a 1D float array, rejecting negative values."""
    bvals = np.asarray(bvalues, dtype=float).reshape(-1)
    if np.any(bvals < 0):
        raise ValueError(f"b-values must be non-negative, got minimum {bvals.min()}.")
    return bvals


def compute_max_bvalue(bvalues) -> float:
    """Largest b-value, or 0.0 for an empty or all-zero list."""
    bvals = validate_bvalues(bvalues)
    if bvals.size == 0:
        return 0.0
    return max(0.0, float(bvals.max()))


def compute_scale_factors(bvalues) -> np.ndarray:
    """
    Per-volume gradient scale factors ``sqrt(b / max_b)``.

    When the largest b-value is 0 (no diffusion weighting) every factor is 0.

    Parameters
    ----------
    bvalues : array-like
        One non-negative b-value per volume.

    Returns
    -------
    np.ndarray
        Scale factors in [0, 1].

    Raises
    ------
    ValueError
        If any b-value is negative.
    """
    bvals = validate_bvalues(bvalues)
    max_bvalue = compute_max_bvalue(bvals)
    if max_bvalue > 0:
        factors = np.sqrt(bvals / max_bvalue)
    else:
        factors = np.zeros_like(bvals)
    for k, (bval, factor) in enumerate(zip(bvals, factors)):
        logger.debug(f"Scale Factor for Multiple BValues: {k} -- sqrt( {bval} / {max_bvalue} ) = {factor}")
    return factors


def normalize_gradient_directions(vectors,
                                  small_gradient_threshold: float = DEFAULT_SMALL_GRADIENT_THRESHOLD) -> np.ndarray:
    """
    Scales gradient directions to unit length.

    Vectors whose norm does not exceed `small_gradient_threshold` are treated
    as baseline (b0) directions and set to zero.
    """
    arr = _as_vector_array(vectors)
    norms = np.linalg.norm(arr, axis=1)
    unit = np.zeros_like(arr)
    keep = norms > small_gradient_threshold
    unit[keep] = arr[keep] / norms[keep, np.newaxis]
    n_small = int(np.count_nonzero((norms > 0) & ~keep))
    if n_small:
        logger.warning(f"{n_small} gradient vector(s) with norm below {small_gradient_threshold} "
                       "were treated as baseline directions.")
    return unit


def recover_unit_directions(stored_vectors, bvalues,
                            small_gradient_threshold: float = DEFAULT_SMALL_GRADIENT_THRESHOLD) -> np.ndarray:
    """
    Unit directions from gradient vectors read back from a DWI file.

    Stored vectors carry a ``sqrt(b / max_b)`` scale, so a low b-value shell
    can be shorter than `small_gradient_threshold`. Vectors of volumes with a
    positive b-value are divided by their own length; the threshold only
    applies to volumes with a zero b-value.
    """
    arr = _as_vector_array(stored_vectors)
    bvals = validate_bvalues(bvalues)
    if len(arr) != len(bvals):
        raise CountMismatchError(
            f"Number of gradient vectors ({len(arr)}) must match number of b-values ({len(bvals)})."
        )
    norms = np.linalg.norm(arr, axis=1)
    weighted = (bvals > 0) & (norms > 0)
    unit = np.zeros_like(arr)
    unit[weighted] = arr[weighted] / norms[weighted, np.newaxis]
    unit[~weighted] = normalize_gradient_directions(arr[~weighted], small_gradient_threshold)
    n_missing = int(np.count_nonzero((bvals > 0) & (norms == 0)))
    if n_missing:
        logger.warning(f"{n_missing} diffusion-weighted volume(s) have a zero gradient vector.")
    return unit


def rotate_by_inverse_frame(vectors, measurement_frame) -> np.ndarray:
    """Applies the inverse of the measurement frame to every (row) vector."""
    arr = _as_vector_array(vectors)
    frame = np.asarray(measurement_frame, dtype=float)
    if frame.shape != (3, 3):
        raise ValueError(f"Measurement frame must be 3x3, got shape {frame.shape}.")
    # True inverse rather than transpose: stored frames drift from orthonormal.
    inverse_frame = np.linalg.inv(frame)
    return arr @ inverse_frame.T


def read_gradient_vector_file(gradient_vector_file: str, n_volumes: int) -> np.ndarray:
    """
    Reads an external gradient override file.

    FORMAT::

        <num_gradients>
        x y z
        x y z
        ...

    Args:
        gradient_vector_file (str): Path to the override file.
        n_volumes (int): Number of diffusion volumes in the dataset.

    Returns:
        np.ndarray: (n_volumes, 3) array of gradient directions.

    Raises:
        IOFailureError: If the file cannot be read.
        CountMismatchError: If the declared count, or the number of vectors,
            differs from `n_volumes`.
        ValueError: If the file is malformed.
    """
    try:
        with open(gradient_vector_file, 'r') as f:
            lines = [line.split() for line in f]
    except OSError as e:
        logger.error(f"Failed to read gradient vector file {gradient_vector_file}: {e}")
        raise IOFailureError(f"Failed to read gradient vector file {gradient_vector_file}: {e}") from e

    lines = [tokens for tokens in lines if tokens]
    if not lines:
        raise ValueError(f"Gradient vector file is empty: {gradient_vector_file}")

    try:
        n_gradients = int(lines[0][0])
    except ValueError as e:
        raise ValueError(f"First line of {gradient_vector_file} must be the number of gradients: {e}") from e

    if n_gradients != n_volumes:
        raise CountMismatchError(
            f"Number of gradients ({n_gradients}) in {gradient_vector_file} doesn't match "
            f"number of volumes ({n_volumes})."
        )

    vector_lines = lines[1:]
    if len(vector_lines) != n_gradients:
        raise CountMismatchError(
            f"{gradient_vector_file} declares {n_gradients} gradients but contains {len(vector_lines)}."
        )
    try:
        vectors = np.array([[float(v) for v in tokens[:3]] for tokens in vector_lines], dtype=float)
    except ValueError as e:
        raise ValueError(f"Could not parse gradient vectors in {gradient_vector_file}: {e}") from e
    if vectors.shape != (n_gradients, 3):
        raise ValueError(f"Every gradient line in {gradient_vector_file} must hold 3 values.")

    logger.info(f"Read {n_gradients} override gradient vectors from {gradient_vector_file}")
    return vectors


class GradientTable:
    """
    Per-volume diffusion encoding: unit directions, b-values and measurement frame.

    Derived quantities are computed on first access and cached. The table
    itself is never modified; an override produces a new table.
    """
    def __init__(self, unit_vectors, bvalues, measurement_frame=None,
                 use_identity_measurement_frame: bool = False):
        self._unit_vectors = _as_vector_array(unit_vectors)
        self._bvalues = validate_bvalues(bvalues)
        if len(self._unit_vectors) != len(self._bvalues):
            raise CountMismatchError(
                f"Number of gradient vectors ({len(self._unit_vectors)}) must match "
                f"number of b-values ({len(self._bvalues)})."
            )
        frame = np.eye(3) if measurement_frame is None else np.asarray(measurement_frame, dtype=float)
        if frame.shape != (3, 3):
            raise ValueError(f"Measurement frame must be 3x3, got shape {frame.shape}.")
        self._measurement_frame = frame
        self.use_identity_measurement_frame = bool(use_identity_measurement_frame)

    def __len__(self):
        return len(self._bvalues)

    @property
    def n_volumes(self) -> int:
        return len(self._bvalues)

    @property
    def unit_vectors(self) -> np.ndarray:
        return self._unit_vectors.copy()

    @property
    def bvalues(self) -> np.ndarray:
        return self._bvalues.copy()

    @property
    def measurement_frame(self) -> np.ndarray:
        return self._measurement_frame.copy()

    @property
    def operative_measurement_frame(self) -> np.ndarray:
        """The frame reported in output metadata."""
        if self.use_identity_measurement_frame:
            return np.eye(3)
        return self._measurement_frame.copy()

    @cached_property
    def max_bvalue(self) -> float:
        return compute_max_bvalue(self._bvalues)

    @cached_property
    def scale_factors(self) -> np.ndarray:
        return compute_scale_factors(self._bvalues)

    @cached_property
    def scaled_vectors(self) -> np.ndarray:
        return self._unit_vectors * self.scale_factors[:, np.newaxis]

    @cached_property
    def output_vectors(self) -> np.ndarray:
        """b-value scaled vectors, expressed in the operative measurement frame."""
        if self.use_identity_measurement_frame:
            return self.scaled_vectors.copy()
        return rotate_by_inverse_frame(self.scaled_vectors, self._measurement_frame)

    def with_directions(self, unit_vectors) -> 'GradientTable':
        """New table with the unit directions replaced; b-values and frame are kept."""
        vectors = _as_vector_array(unit_vectors)
        if len(vectors) != self.n_volumes:
            raise CountMismatchError(
                f"Number of replacement gradients ({len(vectors)}) doesn't match "
                f"number of volumes ({self.n_volumes})."
            )
        return GradientTable(vectors, self._bvalues, self._measurement_frame,
                             self.use_identity_measurement_frame)

    def to_dipy(self, b0_threshold: float = 50.0, atol: float = 1e-2) -> DipyGradientTable:
        """
        Creates a Dipy GradientTable from the b-values and unit directions.

        Raises
        ------
        ValueError
            If Dipy rejects the table (e.g. non-unit vectors for DW volumes).
        """
        try:
            return gradient_table(bvals=self._bvalues, bvecs=self._unit_vectors,
                                  b0_threshold=b0_threshold, atol=atol)
        except ValueError as e:
            raise ValueError(f"Dipy's gradient_table creation failed: {e}") from e


def load_gradient_override(table: GradientTable, gradient_vector_file: str,
                           small_gradient_threshold: float = DEFAULT_SMALL_GRADIENT_THRESHOLD) -> GradientTable:
    """Replaces the directions of `table` with those from an override file."""
    if not os.path.exists(gradient_vector_file):
        raise IOFailureError(f"Gradient vector file not found: {gradient_vector_file}")
    vectors = read_gradient_vector_file(gradient_vector_file, table.n_volumes)
    return table.with_directions(normalize_gradient_directions(vectors, small_gradient_threshold))
