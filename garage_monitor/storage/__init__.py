"""
Storage

SQLite persistence for entity state and orchestration history.
"""

from .local_db import LocalDatabase

__all__ = ["LocalDatabase"]
