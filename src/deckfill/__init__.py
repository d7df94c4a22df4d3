"""Array-bound slide replication for HTML slide decks."""

from .version import __version__

__all__ = ["__version__"]
