"""devmind — self-optimization loop for a population of monitored agents."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("devmind")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
