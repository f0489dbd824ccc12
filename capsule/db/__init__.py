"""
Database module for Capsule server.
"""

from capsule.db.database import Database, close_database, init_database

__all__ = ["Database", "init_database", "close_database"]
