"""Source clients for the external registries and the local store."""

from .base import BaseSourceClient, SourceConfig  # noqa: F401
from .bodacc import BodaccClient  # noqa: F401
from .local import LocalStoreSource  # noqa: F401
from .rne import RneClient  # noqa: F401
from .sirene import SireneClient  # noqa: F401
