"""
FITS dumps of intermediate matrices, for debugging.
"""

import logging
from typing import Dict, List, Optional

import numpy as np
from astropy.io import fits

logger = logging.getLogger(__name__)


def save_arrays_to_fits(
    arrays: Dict[str, np.ndarray],
    prefix: str,
    header: Optional[dict] = None,
    overwrite: bool = True,
) -> List[str]:
    """
    Save named arrays to individual FITS files.

    Parameters
    ----------
    arrays : dict
        Mapping from name to array; each array is written to
        ``{prefix}{name}.fits``
    prefix : str
        Path prefix of the output files
    header : dict, optional
        Extra header cards written to every file
    overwrite : bool
        Whether existing files are replaced

    Returns
    -------
    filenames : list of str
        Paths of the written files
    """
    filenames = []
    for name, array in arrays.items():
        filename = f"{prefix}{name}.fits"

        hdr = fits.Header()
        hdr['ARRNAME'] = name
        for key, value in (header or {}).items():
            hdr[key] = value

        fits.writeto(filename, np.asarray(array), header=hdr, overwrite=overwrite)
        logger.debug("Wrote %s %s to %s", name, np.shape(array), filename)
        filenames.append(filename)
    return filenames


def load_array_from_fits(filename: str) -> np.ndarray:
    """Read the primary array of a FITS file."""
    with fits.open(filename) as hdul:
        return np.array(hdul[0].data)
