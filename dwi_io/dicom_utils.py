import os
import logging
from typing import NamedTuple

import numpy as np
import pydicom
from pydicom.dataset import Dataset
from pydicom.errors import InvalidDicomError

from .errors import IOFailureError, StructuralInconsistencyError

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

DEFAULT_IMAGE_ORIENTATION = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0)


class SliceMetadata(NamedTuple):
    """Geometry of one 2D slice, as reported by its DICOM header."""
    origin: tuple
    rows: int
    cols: int
    image_orientation: tuple
    location: str


class DicomSeries:
    """
    A DICOM diffusion series, read but not yet assembled.

    Attributes:
        datasets (list[Dataset]): One dataset per file, in slice order.
        slice_headers (list[Dataset]): One header per slice. For a multi-frame
            file these are the per-frame functional group items.
        slices (list[SliceMetadata]): Geometry of every slice.
        single_file (bool): True when one multi-frame file holds every slice.
    """
    def __init__(self, datasets: list, slice_headers: list, slices: list, single_file: bool):
        self.datasets = datasets
        self.slice_headers = slice_headers
        self.slices = slices
        self.single_file = single_file

    @property
    def reference(self) -> Dataset:
        return self.datasets[0]

    @property
    def location_strings(self) -> list[str]:
        return [s.location for s in self.slices]

    @property
    def origins(self) -> list[tuple]:
        return [s.origin for s in self.slices]

    def __len__(self):
        return len(self.slices)


def read_dicom_series(dicom_dir: str) -> list[pydicom.FileDataset]:
    """
    Reads all DICOM image files from a directory and returns them sorted.

    Sorting uses InstanceNumber, falling back to AcquisitionNumber and finally
    to the file path.

    Args:
        dicom_dir (str): Path to the directory containing DICOM files.

    Returns:
        list[pydicom.FileDataset]: Sorted datasets.

    Raises:
        IOFailureError: If the directory does not exist or holds no DICOM images.
    """
    if not os.path.isdir(dicom_dir):
        logger.error(f"DICOM directory not found: {dicom_dir}")
        raise IOFailureError(f"DICOM directory not found: {dicom_dir}")

    entries: list[tuple[pydicom.FileDataset, str]] = []

    logger.info(f"Reading DICOM files from directory: {dicom_dir}")
    for root, _, files in os.walk(dicom_dir):
        for filename in sorted(files):
            filepath = os.path.join(root, filename)
            try:
                ds = pydicom.dcmread(filepath, force=True)
            except (InvalidDicomError, OSError) as e:
                logger.debug(f"Skipping unreadable file {filepath}: {e}")
                continue
            if 'PixelData' not in ds:
                logger.debug(f"Skipping non-image DICOM file (missing PixelData): {filepath}")
                continue
            entries.append((ds, filepath))

    if not entries:
        logger.error(f"No DICOM image files found in {dicom_dir}")
        raise IOFailureError(f"No DICOM image files found in {dicom_dir}")

    datasets = [ds for ds, _ in entries]
    has_instance_number = all(getattr(ds, 'InstanceNumber', None) is not None for ds in datasets)
    has_acq_number = all(getattr(ds, 'AcquisitionNumber', None) is not None for ds in datasets)

    if has_instance_number:
        logger.info("Sorting DICOM series by InstanceNumber.")
        entries.sort(key=lambda item: int(item[0].InstanceNumber))
    elif has_acq_number:
        logger.warning("InstanceNumber missing or inconsistent across DICOM files. Sorting by AcquisitionNumber.")
        entries.sort(key=lambda item: int(item[0].AcquisitionNumber))
    else:
        logger.warning("InstanceNumber and AcquisitionNumber are missing. "
                       "Sorting by filename; this might not be accurate for slice order.")
        entries.sort(key=lambda item: item[1])

    logger.info(f"Successfully read and sorted {len(entries)} DICOM datasets.")
    return [ds for ds, _ in entries]


def _location_string(position) -> str:
    # Raw DS text of ImagePositionPatient; used only as a grouping key.
    return '\\'.join(str(v) for v in position)


def _frame_items(ds: Dataset) -> list:
    per_frame = getattr(ds, 'PerFrameFunctionalGroupsSequence', None)
    return list(per_frame) if per_frame else []


def _shared_item(ds: Dataset) -> Dataset | None:
    shared = getattr(ds, 'SharedFunctionalGroupsSequence', None)
    return shared[0] if shared else None


def _first_in_sequence(item: Dataset | None, sequence_keyword: str, keyword: str):
    if item is None:
        return None
    sequence = getattr(item, sequence_keyword, None)
    if not sequence:
        return None
    return getattr(sequence[0], keyword, None)


def is_multiframe(ds: Dataset) -> bool:
    return int(getattr(ds, 'NumberOfFrames', 1) or 1) > 1 and bool(_frame_items(ds))


def extract_slice_metadata(datasets: list[Dataset]) -> DicomSeries:
    """
    Collects per-slice geometry from sorted DICOM datasets.

    A single multi-frame (enhanced) file is expanded into one slice per frame.

    Raises:
        StructuralInconsistencyError: If slices disagree on Rows/Columns or a
            slice lacks ImagePositionPatient.
    """
    if not datasets:
        raise StructuralInconsistencyError("Cannot extract slice metadata: DICOM list is empty.")

    ref_ds = datasets[0]
    rows = int(ref_ds.Rows)
    cols = int(ref_ds.Columns)

    if len(datasets) == 1 and is_multiframe(ref_ds):
        shared = _shared_item(ref_ds)
        shared_iop = _first_in_sequence(shared, 'PlaneOrientationSequence', 'ImageOrientationPatient')
        slice_headers = _frame_items(ref_ds)
        slices = []
        for i, frame in enumerate(slice_headers):
            position = _first_in_sequence(frame, 'PlanePositionSequence', 'ImagePositionPatient')
            if position is None:
                raise StructuralInconsistencyError(f"Frame {i} is missing ImagePositionPatient.")
            iop = _first_in_sequence(frame, 'PlaneOrientationSequence', 'ImageOrientationPatient') or shared_iop
            slices.append(SliceMetadata(
                origin=tuple(float(v) for v in position),
                rows=rows, cols=cols,
                image_orientation=tuple(float(v) for v in (iop or DEFAULT_IMAGE_ORIENTATION)),
                location=_location_string(position),
            ))
        logger.info(f"Expanded multi-frame DICOM file into {len(slices)} slices.")
        return DicomSeries(list(datasets), slice_headers, slices, single_file=True)

    ref_iop = getattr(ref_ds, 'ImageOrientationPatient', None)
    slices = []
    for i, ds in enumerate(datasets):
        if int(ds.Rows) != rows or int(ds.Columns) != cols:
            logger.error(f"Inconsistent Rows/Columns at index {i}. Expected ({rows},{cols}), got ({ds.Rows},{ds.Columns}).")
            raise StructuralInconsistencyError(f"Inconsistent Rows/Columns at slice {i}.")
        position = getattr(ds, 'ImagePositionPatient', None)
        if position is None:
            logger.error(f"Missing ImagePositionPatient in DICOM slice {i}.")
            raise StructuralInconsistencyError(f"Slice {i} is missing ImagePositionPatient.")
        iop = getattr(ds, 'ImageOrientationPatient', None)
        if iop is not None and ref_iop is not None and list(iop) != list(ref_iop):
            logger.warning(f"Inconsistent ImageOrientationPatient at index {i}. Using the first slice's orientation.")
        slices.append(SliceMetadata(
            origin=tuple(float(v) for v in position),
            rows=rows, cols=cols,
            image_orientation=tuple(float(v) for v in (iop or DEFAULT_IMAGE_ORIENTATION)),
            location=_location_string(position),
        ))
    return DicomSeries(list(datasets), list(datasets), slices, single_file=len(datasets) == 1)


def extract_spacing(ref_ds: Dataset) -> np.ndarray:
    """
    Voxel spacing (x, y, slice) from a reference dataset.

    PixelSpacing is [row spacing, column spacing]; x runs along a row, so it
    takes the column spacing. The slice spacing is SpacingBetweenSlices when
    present, otherwise SliceThickness.
    """
    shared = _shared_item(ref_ds)
    pixel_spacing = getattr(ref_ds, 'PixelSpacing', None) or \
        _first_in_sequence(shared, 'PixelMeasuresSequence', 'PixelSpacing')
    if pixel_spacing is None:
        logger.warning("PixelSpacing not found. Assuming 1mm in-plane spacing.")
        pixel_spacing = [1.0, 1.0]

    slice_spacing = getattr(ref_ds, 'SpacingBetweenSlices', None) or \
        _first_in_sequence(shared, 'PixelMeasuresSequence', 'SpacingBetweenSlices')
    if slice_spacing is not None:
        logger.info(f"Using SpacingBetweenSlices ({slice_spacing}mm) for slice spacing.")
    else:
        slice_spacing = getattr(ref_ds, 'SliceThickness', None) or \
            _first_in_sequence(shared, 'PixelMeasuresSequence', 'SliceThickness')
        if slice_spacing is None:
            logger.warning("Neither SpacingBetweenSlices nor SliceThickness found. Assuming 1mm.")
            slice_spacing = 1.0
        else:
            logger.info(f"Using SliceThickness ({slice_spacing}mm) for slice spacing.")

    return np.array([float(pixel_spacing[1]), float(pixel_spacing[0]), float(slice_spacing)], dtype=float)


def assemble_volume(series: DicomSeries) -> np.ndarray:
    """
    Stacks the pixel data of every slice into an int16 buffer of shape (cols, rows, N).

    Raises:
        IOFailureError: If pixel data cannot be decoded.
        StructuralInconsistencyError: If a slice has an unexpected shape.
    """
    rows, cols = series.slices[0].rows, series.slices[0].cols
    n_slices = len(series)
    volume = np.zeros((cols, rows, n_slices), dtype=np.int16)

    if series.single_file:
        try:
            frames = np.asarray(series.reference.pixel_array)
        except Exception as e: # pydicom raises assorted errors for undecodable pixel data
            logger.error(f"Failed to decode pixel data of multi-frame file: {e}")
            raise IOFailureError(f"Failed to decode pixel data: {e}") from e
        if frames.ndim == 2:
            frames = frames[np.newaxis]
        if frames.shape != (n_slices, rows, cols):
            raise StructuralInconsistencyError(
                f"Multi-frame pixel data shape {frames.shape} mismatch with expected ({n_slices},{rows},{cols})."
            )
        volume[...] = frames.transpose(2, 1, 0)
    else:
        for i, ds in enumerate(series.datasets):
            try:
                slice_data = ds.pixel_array
            except Exception as e: # pydicom raises assorted errors for undecodable pixel data
                logger.error(f"Error decoding pixel data for slice {i} ({getattr(ds, 'filename', 'Unknown')}): {e}")
                raise IOFailureError(f"Failed to decode pixel data for slice {i}: {e}") from e
            if slice_data.shape != (rows, cols):
                raise StructuralInconsistencyError(
                    f"Slice {i} data shape {slice_data.shape} mismatch with expected ({rows},{cols})."
                )
            volume[:, :, i] = slice_data.T

    logger.info(f"Successfully stacked {n_slices} slices into a volume of shape {volume.shape}.")
    return volume
