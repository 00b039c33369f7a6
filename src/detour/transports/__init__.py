"""Network loaders used by the probe engine."""

from .http import HttpLoader

__all__ = ["HttpLoader"]
