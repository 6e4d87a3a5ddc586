"""Identity and connection store adapters.

SQLite (via aiosqlite) backs local profiles, ChMS links, parent/student
relationships, connection rows and the sync log.
"""

from .sqlite import SQLiteChmsStore

__all__ = ["SQLiteChmsStore"]
