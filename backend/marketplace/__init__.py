"""Multi-vendor order and payment settlement service."""

__version__ = "1.0.0"
