"""Exception types raised by the DWI conversion pipeline.

Every error here is fatal to the conversion of the current dataset. Nothing is
retried internally; callers decide whether to abort a batch or skip a dataset.
"""


class DWIConvertError(Exception):
    """Base class for all conversion errors."""


class StructuralInconsistencyError(DWIConvertError, ValueError):
    """Slice count does not divide evenly into volumes."""


class CountMismatchError(DWIConvertError, ValueError):
    """A gradient table does not have one entry per diffusion volume."""


class UnrecognizedOutputFormatError(DWIConvertError, ValueError):
    """Output filename extension is not one of the supported formats."""


class IOFailureError(DWIConvertError, OSError):
    """Reading or writing a file failed."""
