"""Command line client for the ReSim simulation testing platform."""

from resim_cli.config import ResimSettings
from resim_cli.context import ResimContext, build_context

__version__ = "0.1.0"

__all__ = ["ResimContext", "ResimSettings", "build_context", "__version__"]
