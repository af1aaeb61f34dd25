"""saia — self-adaptive cells behind a learning router and a calibrated policy gate."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("saia")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
