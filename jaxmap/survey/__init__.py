"""Survey collaborator interface and redshift variants."""

from .catalog import Catalog, Survey, gnomonic_projection, inverse_gnomonic_projection
from .redshift import PdfRedshift, Redshift, RedshiftKind, SpectroscopicRedshift

__all__ = [
    "Catalog",
    "Survey",
    "gnomonic_projection",
    "inverse_gnomonic_projection",
    "PdfRedshift",
    "Redshift",
    "RedshiftKind",
    "SpectroscopicRedshift",
]
