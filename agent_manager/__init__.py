"""Agent Manager X: session detection and status inference for coding agents."""

from .__version__ import __version__

__all__ = ["__version__"]
