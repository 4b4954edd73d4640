"""
sqlsalvage: recover readable content from corrupted SQLite databases.

Drives the sqlite3 shell through a chain of recovery strategies of
decreasing ambition, supervising every child process and streaming live
progress to HTTP clients.
"""

__version__ = "0.1.0"
