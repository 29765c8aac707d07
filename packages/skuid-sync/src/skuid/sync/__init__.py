"""skuid-sync: retrieve, deploy and watch Skuid site metadata.

Public entrypoints (stable): import from `skuid.sync.api`.
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
