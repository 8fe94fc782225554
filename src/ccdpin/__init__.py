"""ccdpin - pin CPU core groups to named processes."""

__version__ = "0.1.0"
