"""Declaration loading and engine settings."""
from .loader import ConfigLoader, compute_checksum
from .settings import EngineSettings

__all__ = ["ConfigLoader", "compute_checksum", "EngineSettings"]
