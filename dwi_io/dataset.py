import numpy as np

from .errors import CountMismatchError, StructuralInconsistencyError
from .gradients import GradientTable
from .orientation import NRRD_SPACE_DEFINITION, compute_nrrd_space_directions


class DWIDataset:
    """
    A diffusion-weighted dataset ready to be written.

    The voxel buffer has shape (cols, rows, total_slices): x, y and the flat
    slice index, with the slices of one volume stored next to each other.
    """
    def __init__(self, data: np.ndarray, spacing, origin, direction,
                 slices_per_volume: int, gradients: GradientTable,
                 metadata: dict = None):
        if not isinstance(data, np.ndarray) or data.ndim != 3:
            raise ValueError("Input 'data' must be a 3D NumPy array (cols, rows, slices).")
        if slices_per_volume <= 0 or data.shape[2] % slices_per_volume != 0:
            raise StructuralInconsistencyError(
                f"Number of slices ({data.shape[2]}) not evenly divisible by "
                f"slices per volume ({slices_per_volume})."
            )
        n_volumes = data.shape[2] // slices_per_volume
        if gradients.n_volumes != n_volumes:
            raise CountMismatchError(
                f"Gradient table has {gradients.n_volumes} entries but the data holds {n_volumes} volumes."
            )

        self.data = data
        self.spacing = np.asarray(spacing, dtype=float).reshape(3)
        self.origin = np.asarray(origin, dtype=float).reshape(3)
        self.direction = np.asarray(direction, dtype=float).reshape(3, 3)
        self.slices_per_volume = int(slices_per_volume)
        self.gradients = gradients
        self.metadata = dict(metadata or {})
        self.space = NRRD_SPACE_DEFINITION

    @property
    def cols(self) -> int:
        return self.data.shape[0]

    @property
    def rows(self) -> int:
        return self.data.shape[1]

    @property
    def total_slices(self) -> int:
        return self.data.shape[2]

    @property
    def n_volumes(self) -> int:
        return self.total_slices // self.slices_per_volume

    @property
    def space_directions(self) -> np.ndarray:
        return compute_nrrd_space_directions(self.direction, self.spacing)

    def lps_affine(self) -> np.ndarray:
        """4x4 voxel-to-LPS affine."""
        affine = np.eye(4)
        affine[:3, :3] = self.space_directions
        affine[:3, 3] = self.origin
        return affine

    def ras_affine(self) -> np.ndarray:
        """4x4 voxel-to-RAS affine, as NIfTI expects."""
        return np.diag([-1.0, -1.0, 1.0, 1.0]) @ self.lps_affine()

    def __repr__(self):
        return (f"DWIDataset(size=({self.cols}, {self.rows}, {self.slices_per_volume}, {self.n_volumes}), "
                f"spacing={self.spacing.tolist()}, max_bvalue={self.gradients.max_bvalue})")
