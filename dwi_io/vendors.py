import logging
from enum import Enum

import numpy as np
from pydicom.dataset import Dataset
from pydicom.multival import MultiValue

from .volume_structure import VolumeStructure

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

# Standard DICOM diffusion tags
BVALUE_TAG = (0x0018, 0x9087)              # DiffusionBValue
GRADIENT_ORIENTATION_TAG = (0x0018, 0x9089) # DiffusionGradientOrientation
BMATRIX_SEQUENCE_TAG = (0x0018, 0x9601)     # DiffusionBMatrixSequence
BMATRIX_ELEMENT_TAGS = {                    # DiffusionBValueXX .. ZZ
    'xx': (0x0018, 0x9602), 'xy': (0x0018, 0x9603), 'xz': (0x0018, 0x9604),
    'yy': (0x0018, 0x9605), 'yz': (0x0018, 0x9606), 'zz': (0x0018, 0x9607),
}

# GE private tags
GE_BVALUE_TAG = (0x0043, 0x1039)
GE_GRADIENT_TAGS = ((0x0019, 0x10bb), (0x0019, 0x10bc), (0x0019, 0x10bd))

# Philips private tags
PHILIPS_BVALUE_TAG = (0x2001, 0x1003)
PHILIPS_GRADIENT_TAGS = ((0x2005, 0x10b0), (0x2005, 0x10b1), (0x2005, 0x10b2))


class Vendor(Enum):
    STANDARD = 'standard'
    GE = 'ge'
    PHILIPS = 'philips'


def detect_vendor(ds: Dataset) -> Vendor:
    """Picks the vendor variant from the Manufacturer tag."""
    manufacturer = str(getattr(ds, 'Manufacturer', '')).upper()
    if 'GE' in manufacturer.split():
        return Vendor.GE
    if 'PHILIPS' in manufacturer:
        return Vendor.PHILIPS
    return Vendor.STANDARD


def _get_value(ds: Dataset, tag):
    """Value of `tag` in `ds` or its MRDiffusionSequence item, else None."""
    if tag in ds:
        return ds[tag].value
    diffusion_seq = getattr(ds, 'MRDiffusionSequence', None)
    if diffusion_seq:
        item = diffusion_seq[0]
        if tag in item:
            return item[tag].value
        # DiffusionGradientOrientation lives one level deeper in enhanced MR.
        gradient_seq = getattr(item, 'DiffusionGradientDirectionSequence', None)
        if gradient_seq and tag in gradient_seq[0]:
            return gradient_seq[0][tag].value
    return None


def _private_numbers(value) -> list[float]:
    """Numeric values of a private element, which may arrive undecoded as bytes."""
    if isinstance(value, bytes):
        text = value.decode('ascii', errors='ignore').strip('\x00 ')
        try:
            return [float(v) for v in text.split('\\') if v.strip()]
        except ValueError:
            if len(value) % 4 == 0:
                return [float(v) for v in np.frombuffer(value, dtype='<f4')]
            raise
    if isinstance(value, (MultiValue, list, tuple)):
        return [float(v) for v in value]
    return [float(value)]


def volume_reference_indices(structure: VolumeStructure) -> list[int]:
    """File-order index of the first slice of every volume."""
    if structure.is_interleaved:
        return list(range(structure.n_volumes))
    return [k * structure.slices_per_volume for k in range(structure.n_volumes)]


class StandardDiffusionExtractor:
    """Reads gradients from the DICOM standard diffusion attributes."""
    vendor = Vendor.STANDARD
    # None: slice order is determined from the slice origins.
    known_slice_order_is = None

    def __init__(self, use_bmatrix_gradient_directions: bool = False):
        self.use_bmatrix_gradient_directions = use_bmatrix_gradient_directions

    def extract_vendor_flags(self, headers: list, reference: Dataset | None = None) -> dict:
        """
        Vendor metadata for the dataset.

        `reference` is the file-level dataset; multi-frame headers are
        per-frame items that do not carry Manufacturer.
        """
        ref = reference if reference is not None else headers[0]
        return {
            'Vendor': self.vendor.value,
            'Manufacturer': str(getattr(ref, 'Manufacturer', '')),
            'UseBMatrixGradientDirections': self.use_bmatrix_gradient_directions,
        }

    def read_bvalue(self, ds: Dataset) -> float | None:
        value = _get_value(ds, BVALUE_TAG)
        return None if value is None else float(value)

    def read_direction(self, ds: Dataset) -> np.ndarray | None:
        value = _get_value(ds, GRADIENT_ORIENTATION_TAG)
        if value is None:
            return None
        vec = np.array(value, dtype=float).reshape(-1)
        if vec.shape != (3,):
            logger.warning(f"DiffusionGradientOrientation has unexpected shape {vec.shape}. Expected (3,).")
            return None
        return vec

    def read_bmatrix(self, ds: Dataset) -> np.ndarray | None:
        sequence = _get_value(ds, BMATRIX_SEQUENCE_TAG)
        if not sequence:
            return None
        item = sequence[0]
        if not all(tag in item for tag in BMATRIX_ELEMENT_TAGS.values()):
            return None
        e = {name: float(item[tag].value) for name, tag in BMATRIX_ELEMENT_TAGS.items()}
        return np.array([[e['xx'], e['xy'], e['xz']],
                         [e['xy'], e['yy'], e['yz']],
                         [e['xz'], e['yz'], e['zz']]])

    def measurement_frame(self, direction: np.ndarray) -> np.ndarray:
        # Standard gradient orientations are given in the patient (LPS) frame.
        return np.eye(3)

    def extract_gradient_table(self, headers: list, structure: VolumeStructure,
                               direction: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Reads one direction and b-value per diffusion volume.

        Args:
            headers (list[Dataset]): Per-slice headers in file order.
            structure (VolumeStructure): Layout of the slices.
            direction (np.ndarray): Volume direction cosines.

        Returns:
            tuple:
                - vectors (np.ndarray): (n_volumes, 3) raw gradient directions.
                - bvalues (np.ndarray): (n_volumes,) b-values.
                - measurement_frame (np.ndarray): 3x3 frame of the directions.
        """
        vectors = []
        bvalues = []
        for k, index in enumerate(volume_reference_indices(structure)):
            ds = headers[index]
            bvalue = None
            vec = None
            if self.use_bmatrix_gradient_directions:
                bmatrix = self.read_bmatrix(ds)
                if bmatrix is not None:
                    bvalue = float(np.trace(bmatrix))
                    eigenvalues, eigenvectors = np.linalg.eigh(bmatrix)
                    vec = eigenvectors[:, np.argmax(eigenvalues)]
                else:
                    logger.warning(f"B-matrix requested but not found for volume {k}. Using reported gradient.")
            if bvalue is None:
                bvalue = self.read_bvalue(ds)
            if vec is None:
                vec = self.read_direction(ds)

            if bvalue is None:
                logger.debug(f"No b-value found for volume {k}. Assuming b-value=0.")
                bvalue = 0.0
            if vec is None:
                if bvalue > 0:
                    logger.warning(f"Volume {k} has b-value {bvalue} but no gradient direction. Setting [0,0,0].")
                vec = np.zeros(3)
            vectors.append(vec)
            bvalues.append(bvalue)

        return np.array(vectors, dtype=float).reshape(-1, 3), np.array(bvalues, dtype=float), \
            self.measurement_frame(direction)


class GEDiffusionExtractor(StandardDiffusionExtractor):
    """GE stores diffusion information in private groups 0019 and 0043."""
    vendor = Vendor.GE

    def read_bvalue(self, ds: Dataset) -> float | None:
        if GE_BVALUE_TAG in ds:
            first = _private_numbers(ds[GE_BVALUE_TAG].value)[0]
            # Large offsets encode the acquisition slot; only the remainder is the b-value.
            return float(int(first) % 100000)
        return super().read_bvalue(ds)

    def read_direction(self, ds: Dataset) -> np.ndarray | None:
        if all(tag in ds for tag in GE_GRADIENT_TAGS):
            return np.array([_private_numbers(ds[tag].value)[0] for tag in GE_GRADIENT_TAGS], dtype=float)
        return super().read_direction(ds)

    def measurement_frame(self, direction: np.ndarray) -> np.ndarray:
        # GE gradients are given along the image axes.
        return np.array(direction, dtype=float, copy=True)


class PhilipsDiffusionExtractor(StandardDiffusionExtractor):
    """Philips stores diffusion information in private groups 2001 and 2005."""
    vendor = Vendor.PHILIPS

    def read_bvalue(self, ds: Dataset) -> float | None:
        if PHILIPS_BVALUE_TAG in ds:
            return _private_numbers(ds[PHILIPS_BVALUE_TAG].value)[0]
        return super().read_bvalue(ds)

    def read_direction(self, ds: Dataset) -> np.ndarray | None:
        if all(tag in ds for tag in PHILIPS_GRADIENT_TAGS):
            return np.array([_private_numbers(ds[tag].value)[0] for tag in PHILIPS_GRADIENT_TAGS], dtype=float)
        return super().read_direction(ds)


VENDOR_EXTRACTORS = {
    Vendor.STANDARD: StandardDiffusionExtractor,
    Vendor.GE: GEDiffusionExtractor,
    Vendor.PHILIPS: PhilipsDiffusionExtractor,
}


def get_vendor_extractor(vendor: Vendor | str, use_bmatrix_gradient_directions: bool = False):
    """Returns the diffusion extractor for `vendor` (enum member or its value)."""
    try:
        vendor = Vendor(vendor) if not isinstance(vendor, Vendor) else vendor
    except ValueError:
        raise ValueError(f"Unknown vendor '{vendor}'. Choose from {[v.value for v in Vendor]}.")
    return VENDOR_EXTRACTORS[vendor](use_bmatrix_gradient_directions)
