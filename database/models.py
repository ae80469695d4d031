"""
SQLite connection management for the payment verification engine
"""

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager

import config
from database.schema import ALL_TABLES

logger = logging.getLogger(__name__)

# A lock to make the singleton creation thread-safe
_lock = threading.Lock()
_instance = None


class Database:
    """
    SQLite database connection and initialization.
    This class is implemented as a singleton so that a single, shared
    connection is used by the orchestrator, the expiry sweep and the
    dashboard API, preventing 'database is locked' errors.
    """

    @staticmethod
    def get_instance():
        """Return existing Database singleton instance or create default one."""
        global _instance
        if _instance is None:
            _instance = Database()
        return _instance

    def __new__(cls, *args, **kwargs):
        global _instance
        if _instance is None:
            with _lock:
                if _instance is None:
                    _instance = super().__new__(cls)
        return _instance

    def __init__(self, db_name=None):
        # The __init__ might be called multiple times, but we only want to
        # initialize the connection once.
        if hasattr(self, 'conn') and self.conn is not None:
            return

        if db_name is None:
            db_name = getattr(config, 'DATABASE_NAME', None) or "payment_verification.db"
        self.db_name = db_name
        self.conn = None
        self.cursor = None
        self._write_lock = threading.RLock()
        self.connect()
        self.init_database()

    def connect(self):
        """Connect to the SQLite database if not already connected."""
        if self.conn is not None:
            return True
        if self.db_name != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(self.db_name)), exist_ok=True)
        try:
            # `check_same_thread=False` is crucial for sharing the connection
            # across the event loop and the JobQueue threads.
            self.conn = sqlite3.connect(self.db_name, timeout=10, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            self.cursor = self.conn.cursor()
            logger.info(f"Connected to database {os.path.abspath(self.db_name) if self.db_name != ':memory:' else ':memory:'}")
            return True
        except sqlite3.Error as e:
            logger.error(f"Database connection error for {self.db_name}: {e}")
            self.conn = None
            return False

    def close(self):
        """
        This is a no-op in the singleton implementation to prevent the shared
        connection from being closed prematurely by a single caller.
        """
        pass

    def commit(self):
        """Commit changes to the database"""
        if self.conn:
            self.conn.commit()

    def rollback(self):
        if self.conn:
            self.conn.rollback()

    def execute(self, query, params=()):
        """Execute a database query with parameters.

        Errors are logged with the offending query and re-raised.
        """
        try:
            self.cursor = self.conn.execute(query, params)
            return True
        except sqlite3.Error as e:
            logger.error(f"Query execution error: {e} | Query: {query.strip()} | Params: {params}")
            raise

    def fetchone(self):
        """Fetch a single row from the result set"""
        return self.cursor.fetchone()

    def fetchall(self):
        """Fetch all rows from the result set"""
        return self.cursor.fetchall()

    @property
    def rowcount(self) -> int:
        return self.cursor.rowcount if self.cursor is not None else 0

    @contextmanager
    def transaction(self):
        """Run several statements atomically; commit on success, roll back on error.

        Usage:
            with db.transaction():
                db.execute("UPDATE ...")
                db.execute("INSERT ...")
        """
        with self._write_lock:
            try:
                yield self
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    def create_tables(self, tables):
        """Create database tables if they don't exist"""
        for table_query in tables:
            self.execute(table_query)
        self.commit()
        return True

    def init_database(self):
        """Create every table and index the engine needs."""
        self.create_tables(ALL_TABLES)
        logger.debug("Database schema ensured")
