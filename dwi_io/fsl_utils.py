import os
import json
import logging

import numpy as np
import nibabel as nib

from .dataset import DWIDataset
from .errors import (CountMismatchError, IOFailureError, StructuralInconsistencyError,
                     UnrecognizedOutputFormatError)
from .gradients import DEFAULT_SMALL_GRADIENT_THRESHOLD, GradientTable, recover_unit_directions

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

NIFTI_EXTENSIONS = ('.nii.gz', '.nii')
LPS_TO_RAS = np.diag([-1.0, -1.0, 1.0, 1.0])


def split_nifti_extension(filepath: str) -> tuple[str, str | None]:
    """Splits `filepath` into (stem, extension); extension is None if it is not NIfTI."""
    for ext in NIFTI_EXTENSIONS:
        if filepath.endswith(ext):
            return filepath[:-len(ext)], ext
    return filepath, None


def has_valid_nifti_extension(filepath: str) -> bool:
    return split_nifti_extension(filepath)[1] is not None


def write_bvalues(filepath: str, bvalues) -> None:
    """Writes b-values as a single space-separated row."""
    np.savetxt(filepath, np.asarray(bvalues, dtype=float).reshape(1, -1), fmt='%g')
    logger.info(f"b-values saved to: {filepath}")


def write_bvectors(filepath: str, bvectors) -> None:
    """Writes one gradient vector per line (Nx3)."""
    np.savetxt(filepath, np.asarray(bvectors, dtype=float).reshape(-1, 3), fmt='%.8f')
    logger.info(f"b-vectors saved to: {filepath} (format: Nx3)")


def reshape_to_4d(dataset: DWIDataset) -> np.ndarray:
    """
    Reshapes the (cols, rows, N) buffer to (cols, rows, N // n_volumes, n_volumes).

    Raises:
        StructuralInconsistencyError: If N is not a multiple of the number of
            volumes, e.g. after `dataset.data` was replaced.
    """
    cols, rows, total_slices = dataset.data.shape
    n_volumes = dataset.gradients.n_volumes
    if n_volumes == 0:
        raise StructuralInconsistencyError("Cannot reshape a dataset without diffusion volumes.")
    slices_per_volume, remainder = divmod(total_slices, n_volumes)
    if remainder:
        logger.error(f"{total_slices} slices cannot be split evenly into {n_volumes} volumes "
                     f"({remainder} left over).")
        raise StructuralInconsistencyError(
            f"{total_slices} slices cannot be split evenly into {n_volumes} volumes."
        )
    return np.reshape(dataset.data, (cols, rows, slices_per_volume, n_volumes), order='F')


def write_fsl_formatted_file_set(dataset: DWIDataset,
                                 output_nifti_file: str,
                                 output_bval_file: str = None,
                                 output_bvec_file: str = None,
                                 json_sidecar_file: str = None) -> tuple[str, str]:
    """
    Writes a DWI dataset as a 4D NIfTI image with FSL .bval/.bvec sidecars.

    Args:
        dataset (DWIDataset): Dataset to write.
        output_nifti_file (str): Output .nii or .nii.gz path.
        output_bval_file (str, optional): Defaults to the image name with a .bval extension.
        output_bvec_file (str, optional): Defaults to the image name with a .bvec extension.
        json_sidecar_file (str, optional): If given, dataset metadata is saved here as JSON.

    Returns:
        tuple[str, str]: The .bval and .bvec paths written.

    Raises:
        UnrecognizedOutputFormatError: If the image name is not .nii/.nii.gz.
        StructuralInconsistencyError: See `reshape_to_4d`.
        IOFailureError: If a file cannot be written.
    """
    stem, ext = split_nifti_extension(output_nifti_file)
    if ext is None:
        logger.error(f"Unrecognized FSL output extension: {output_nifti_file}")
        raise UnrecognizedOutputFormatError(
            f"FSL output must end in .nii or .nii.gz, got: {output_nifti_file}"
        )
    output_bval_file = output_bval_file or stem + '.bval'
    output_bvec_file = output_bvec_file or stem + '.bvec'

    image_data = reshape_to_4d(dataset)
    affine = LPS_TO_RAS @ dataset.lps_affine()
    logger.info(f"Saving DWI NIfTI image with data shape {image_data.shape} and affine:\n{affine}")

    nifti_image = nib.Nifti1Image(image_data, affine)
    nifti_image.set_qform(affine, code='scanner')
    nifti_image.set_sform(affine, code='unknown')

    output_dir = os.path.dirname(output_nifti_file)
    try:
        if output_dir and not os.path.exists(output_dir):
            os.makedirs(output_dir, exist_ok=True)
        nib.save(nifti_image, output_nifti_file)
        logger.info(f"DWI NIfTI file saved successfully: {output_nifti_file}")
        write_bvalues(output_bval_file, dataset.gradients.bvalues)
        write_bvectors(output_bvec_file, dataset.gradients.output_vectors)
        if json_sidecar_file:
            with open(json_sidecar_file, 'w') as f:
                json.dump(dataset_metadata(dataset), f, indent=4)
            logger.info(f"Metadata JSON sidecar saved successfully: {json_sidecar_file}")
    except OSError as e:
        logger.error(f"Failed to write FSL file set for {output_nifti_file}: {e}")
        raise IOFailureError(f"Failed to write FSL file set for {output_nifti_file}: {e}") from e

    return output_bval_file, output_bvec_file


def dataset_metadata(dataset: DWIDataset) -> dict:
    """JSON-serializable summary of a dataset."""
    gradients = dataset.gradients
    metadata = {
        'Dimensions': [dataset.cols, dataset.rows, dataset.slices_per_volume, dataset.n_volumes],
        'Spacing': dataset.spacing.tolist(),
        'Origin': dataset.origin.tolist(),
        'Space': dataset.space,
        'MaxBValue': gradients.max_bvalue,
        'MeasurementFrame': gradients.operative_measurement_frame.tolist(),
    }
    for key, value in dataset.metadata.items():
        if isinstance(value, np.ndarray):
            value = value.tolist()
        elif isinstance(value, np.generic):
            value = value.item()
        metadata[key] = value
    return metadata


def load_fsl_bvals(filepath: str) -> np.ndarray:
    """
    Loads b-values from an FSL-formatted text file (one row or one column).

    Raises
    ------
    IOFailureError
        If the file does not exist.
    ValueError
        If the file is empty, malformed or not one-dimensional.
    """
    if not os.path.exists(filepath):
        raise IOFailureError(f"FSL bval file not found at: {filepath}")
    try:
        bvals = np.loadtxt(filepath, ndmin=1)
    except ValueError as e:
        raise ValueError(f"Failed to load or parse bval file {filepath}: {e}") from e
    if bvals.size == 0:
        raise ValueError(f"bval file is empty: {filepath}")

    bvals = bvals.squeeze()
    if bvals.ndim == 0:
        bvals = bvals.reshape(1,)
    elif bvals.ndim != 1:
        raise ValueError(f"b-values in {filepath} could not be converted to a 1D array. Got shape {bvals.shape}.")
    return bvals


def load_fsl_bvecs(filepath: str) -> np.ndarray:
    """
    Loads b-vectors from an FSL-formatted text file, either 3xN or Nx3.

    A 3x3 file is read as Nx3. Always returns an Nx3 array.
    """
    if not os.path.exists(filepath):
        raise IOFailureError(f"FSL bvec file not found at: {filepath}")
    try:
        bvecs = np.loadtxt(filepath, ndmin=2)
    except ValueError as e:
        raise ValueError(f"Failed to load or parse bvec file {filepath}: {e}") from e
    if bvecs.size == 0:
        raise ValueError(f"bvec file is empty: {filepath}")

    if bvecs.shape == (3, 1):
        bvecs = bvecs.T
    elif bvecs.shape[0] == 3 and bvecs.shape[1] != 3:
        bvecs = bvecs.T
    if bvecs.ndim != 2 or bvecs.shape[1] != 3:
        raise ValueError(f"b-vectors in {filepath} must be 3xN or Nx3. Got shape {bvecs.shape}.")
    return bvecs


def read_fsl_dataset(nifti_filepath: str, bval_filepath: str = None, bvec_filepath: str = None,
                     small_gradient_threshold: float = DEFAULT_SMALL_GRADIENT_THRESHOLD) -> DWIDataset:
    """
    Reads a 4D NIfTI image with its FSL .bval/.bvec files into a DWIDataset.

    The .bvec rows are normalised per volume (they may hold b-value scaled
    vectors) and get an identity measurement frame.

    Raises:
        IOFailureError: If a file is missing or nibabel cannot load the image.
        StructuralInconsistencyError: If the image is not 4D.
        CountMismatchError: If the sidecars disagree with the volume count.
    """
    stem, _ = split_nifti_extension(nifti_filepath)
    bval_filepath = bval_filepath or stem + '.bval'
    bvec_filepath = bvec_filepath or stem + '.bvec'

    if not os.path.exists(nifti_filepath):
        raise IOFailureError(f"NIfTI DWI file not found at: {nifti_filepath}")
    try:
        img = nib.load(nifti_filepath)
        data = np.asanyarray(img.dataobj)
    except (nib.filebasedimages.ImageFileError, OSError) as e:
        logger.error(f"Failed to load NIfTI file at {nifti_filepath}: {e}")
        raise IOFailureError(f"Failed to load NIfTI file at {nifti_filepath}: {e}") from e

    if data.ndim != 4:
        raise StructuralInconsistencyError(f"Expected 4D DWI data, but got {data.ndim}D data from {nifti_filepath}.")

    bvals = load_fsl_bvals(bval_filepath)
    bvecs = load_fsl_bvecs(bvec_filepath)
    n_volumes = data.shape[3]
    if len(bvals) != n_volumes or len(bvecs) != n_volumes:
        raise CountMismatchError(
            f"Volume count ({n_volumes}) does not match b-values ({len(bvals)}) "
            f"and b-vectors ({len(bvecs)})."
        )

    lps_affine = LPS_TO_RAS @ img.affine
    space_directions = lps_affine[:3, :3]
    spacing = np.linalg.norm(space_directions, axis=0)
    direction = space_directions / spacing
    origin = lps_affine[:3, 3]

    gradients = GradientTable(recover_unit_directions(bvecs, bvals, small_gradient_threshold), bvals)

    cols, rows, slices_per_volume = data.shape[:3]
    flat = np.asarray(data).astype(np.int16).reshape((cols, rows, slices_per_volume * n_volumes), order='F')
    logger.info(f"Read FSL dataset {nifti_filepath} with {n_volumes} volumes.")
    return DWIDataset(flat, spacing, origin, direction, slices_per_volume, gradients,
                      metadata={'source_format': 'FSL'})
