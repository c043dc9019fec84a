"""
Database package: declarative base, async engine management and ORM models.

Import submodules explicitly to avoid circular imports between models and
services.
"""

__all__ = []
