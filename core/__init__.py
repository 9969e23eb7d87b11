"""
Core package: configuration, database, errors, request pipeline and security.
Clean separation from API routes for testability and deployment flexibility.
"""

from core.config import get_settings

__all__ = ["get_settings"]
