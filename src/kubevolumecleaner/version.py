"""Version of the installed kube-volume-cleaner distribution."""

__all__ = ("DISTRIBUTION_NAME", "get_version")

from functools import lru_cache
from importlib import metadata

DISTRIBUTION_NAME = "kube-volume-cleaner"


@lru_cache(maxsize=1)
def get_version() -> str:
    """Return the installed version, or ``0+unknown`` when running from a
    source tree that was never installed.
    """
    try:
        return metadata.version(DISTRIBUTION_NAME)
    except metadata.PackageNotFoundError:
        return "0+unknown"
