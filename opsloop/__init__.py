"""opsloop — mission orchestration and self-healing for an autonomous task factory."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("opsloop")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
