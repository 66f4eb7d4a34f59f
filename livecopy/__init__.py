"""Install, upgrade and reset live system media."""

from .__version__ import __version__

__all__ = ["__version__"]
