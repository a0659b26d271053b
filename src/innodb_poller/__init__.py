"""
InnoDB metrics poller.

Polls a MySQL server's InnoDB metrics and global status variables on a fixed
interval and records every new observation in a local SQLite database.
"""

__version__ = "0.1.0"
