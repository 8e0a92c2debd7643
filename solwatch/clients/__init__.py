"""Provider clients used for enrichment and holdings refresh."""

from .helius import HeliusClient
from .jupiter import JupiterClient

__all__ = ["HeliusClient", "JupiterClient"]
