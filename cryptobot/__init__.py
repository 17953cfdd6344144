"""Core package for the cryptobot trading backend."""

from importlib import metadata

try:
    __version__ = metadata.version('cryptobot')
except metadata.PackageNotFoundError:  # pragma: no cover
    __version__ = '0.1.0-dev'

__all__ = ['__version__']
