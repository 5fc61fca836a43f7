"""imageforge - Build orchestration for deployable OS volume images.

This package builds a bootable volume from installation media, optionally
customizes it, and captures it into a distributable image artifact while
keeping the host clean through a crash-durable resource ledger.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
