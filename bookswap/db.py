import datetime
import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from bookswap.settings import settings

logger = logging.getLogger(__name__)


def utcnow() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


@contextmanager
def db(path: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """
    Open a connection for one unit of work.
    Commits when the block exits cleanly, rolls back on any exception.
    """
    conn = sqlite3.connect(path or settings.db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def init_db(path: Optional[str] = None) -> None:
    with db(path) as c:
        c.execute("""
        CREATE TABLE IF NOT EXISTS schools (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            domain TEXT NOT NULL UNIQUE,
            created_at TEXT NOT NULL
        )
        """)
        c.execute("""
        CREATE TABLE IF NOT EXISTS profiles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT NOT NULL UNIQUE,
            first_name TEXT NOT NULL,
            last_name TEXT NOT NULL,
            school_id INTEGER NOT NULL REFERENCES schools(id),
            graduation_year INTEGER,
            created_at TEXT NOT NULL
        )
        """)
        c.execute("""
        CREATE TABLE IF NOT EXISTS student_registry (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            school_id INTEGER NOT NULL REFERENCES schools(id),
            student_id_num TEXT NOT NULL,
            first_name TEXT NOT NULL,
            last_name TEXT NOT NULL,
            student_email TEXT NOT NULL UNIQUE,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_by INTEGER REFERENCES profiles(id),
            created_at TEXT NOT NULL,
            UNIQUE(school_id, student_id_num)
        )
        """)
        c.execute("""
        CREATE TABLE IF NOT EXISTS user_roles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
            role TEXT NOT NULL CHECK (role IN ('admin', 'moderator', 'student')),
            created_at TEXT NOT NULL,
            UNIQUE(user_id, role)
        )
        """)
        c.execute("""
        CREATE TABLE IF NOT EXISTS locations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            school_id INTEGER NOT NULL REFERENCES schools(id),
            name TEXT NOT NULL,
            label TEXT,
            created_at TEXT NOT NULL
        )
        """)
        c.execute("""
        CREATE TABLE IF NOT EXISTS textbooks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            owner_id INTEGER NOT NULL REFERENCES profiles(id),
            school_id INTEGER REFERENCES schools(id),
            title TEXT NOT NULL,
            author TEXT,
            isbn TEXT,
            edition TEXT,
            condition TEXT CHECK (condition IN ('new', 'like-new', 'good', 'fair', 'poor')),
            photo_url TEXT,
            status TEXT NOT NULL DEFAULT 'available' CHECK (status IN ('available', 'reserved', 'lent')),
            created_at TEXT NOT NULL
        )
        """)
        c.execute("""
        CREATE TABLE IF NOT EXISTS requests (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            borrower_id INTEGER NOT NULL REFERENCES profiles(id),
            textbook_id INTEGER NOT NULL REFERENCES textbooks(id) ON DELETE CASCADE,
            location_id INTEGER REFERENCES locations(id),
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'approved', 'rejected', 'completed', 'returned')),
            proposed_time TEXT,
            created_at TEXT NOT NULL
        )
        """)
        c.execute("""
        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            request_id INTEGER NOT NULL REFERENCES requests(id) ON DELETE CASCADE,
            from_id INTEGER NOT NULL REFERENCES profiles(id),
            body TEXT NOT NULL,
            kind TEXT NOT NULL DEFAULT 'user' CHECK (kind IN ('user', 'system')),
            created_at TEXT NOT NULL
        )
        """)
        c.execute("""
        CREATE TABLE IF NOT EXISTS reports (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            reporter_id INTEGER NOT NULL REFERENCES profiles(id),
            target_type TEXT NOT NULL CHECK (target_type IN ('textbook', 'user', 'message')),
            target_id INTEGER NOT NULL,
            reason TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'resolved', 'dismissed')),
            created_at TEXT NOT NULL
        )
        """)
        c.execute("CREATE INDEX IF NOT EXISTS idx_textbooks_owner ON textbooks(owner_id)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_requests_textbook ON requests(textbook_id, status)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_requests_borrower ON requests(borrower_id, status)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_messages_request ON messages(request_id)")
    logger.info(f"Database schema ready at {path or settings.db_path}")
