"""Data access layer for Cluebook without external ORM dependencies."""

from __future__ import annotations

import contextlib
import datetime
import logging
import os
import re
import sqlite3
import threading
from dataclasses import dataclass, field
from typing import Iterator, Optional, Sequence
from urllib.parse import urlparse

import psycopg
from flask_login import UserMixin
from psycopg.rows import dict_row

from config.settings import get_settings

logger = logging.getLogger(__name__)

_connection: Optional[object] = None
_backend: Optional[str] = None  # "sqlite" or "postgres"
_transaction_depth = 0
# Serializes use of the shared connection; a thread inside transaction() owns it
# until the outermost block exits.
_lock = threading.RLock()

DatabaseError = (sqlite3.Error, psycopg.Error)
IntegrityError = (sqlite3.IntegrityError, psycopg.IntegrityError)

_REDACTED = "[redacted]"
_BCRYPT_HASH_RE = re.compile(r"^\$2[abxy]?\$\d{2}\$")


class User(UserMixin):
    """Flask-Login compatible user wrapper."""

    def __init__(
        self,
        *,
        id: int,
        username: str,
        password_hash: str,
        is_admin: bool,
        created_at: datetime.datetime,
    ) -> None:
        self.id = id
        self.username = username
        self.password_hash = password_hash
        self.is_admin = is_admin
        self.created_at = created_at

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<User id={self.id} admin={self.is_admin} username={self.username!r}>"


@dataclass
class QueryResult:
    rows: list[dict] = field(default_factory=list)
    rowcount: int = 0
    lastrowid: Optional[int] = None


def _resolve_default_sqlite_path() -> str:
    root_dir = os.path.dirname(os.path.dirname(__file__))
    return os.path.join(root_dir, "cluebook_dev.sqlite")


def _normalize_sqlite_path(database_url: str) -> str:
    parsed = urlparse(database_url)
    path = parsed.path or ""
    if path.startswith("/"):
        path = path[1:]
    if path in {"", ":memory:"}:
        return ":memory:"
    if parsed.netloc:
        path = os.path.join(parsed.netloc, path)
    return path or _resolve_default_sqlite_path()


def get_connection():
    """Return a singleton database connection."""
    global _connection, _backend
    if _connection is not None:
        return _connection

    with _lock:
        if _connection is None:
            _connection, _backend = _connect()
    return _connection


def _connect():
    settings = get_settings()
    database_url = settings.DATABASE_URL or f"sqlite:///{_resolve_default_sqlite_path()}"

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    if database_url.startswith("sqlite"):
        db_path = _normalize_sqlite_path(database_url)
        conn = sqlite3.connect(
            db_path,
            detect_types=sqlite3.PARSE_DECLTYPES,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn, "sqlite"

    return psycopg.connect(database_url, row_factory=dict_row), "postgres"


def get_backend() -> Optional[str]:
    get_connection()
    return _backend


def reset_engine() -> None:
    """Reset the current database connection (used in tests)."""
    global _connection, _backend, _transaction_depth
    with _lock:
        if _connection is not None:
            _connection.close()
        _connection = None
        _backend = None
        _transaction_depth = 0


def _log_timestamp() -> str:
    return datetime.datetime.now().strftime("%b %d %Y %H:%M:%S")


def _loggable_params(params: Sequence[object], redact: bool) -> list[object]:
    if redact:
        return [_REDACTED for _ in params]
    loggable: list[object] = []
    for value in params:
        if isinstance(value, str) and _BCRYPT_HASH_RE.match(value):
            loggable.append(_REDACTED)
        else:
            loggable.append(value)
    return loggable


def _log_query(statement: str, params: Sequence[object], redact: bool) -> None:
    if not get_settings().SQL_LOG_ENABLED:
        return
    compact = " ".join(statement.split())
    logger.info("%s %s %s", _log_timestamp(), compact, _loggable_params(params, redact))


def db_query(
    statement: str,
    params: Sequence[object] = (),
    *,
    redact: bool = False,
) -> QueryResult:
    """Execute a parameterized statement and return its rows and row count.

    Statements use ``%s`` placeholders; they are rewritten for sqlite. Outside
    of ``transaction()`` each statement is committed on its own. Driver errors
    are logged and re-raised unchanged.
    """
    conn = get_connection()
    if _backend == "sqlite":
        statement = statement.replace("%s", "?")
    params = tuple(params)

    with _lock:
        _log_query(statement, params, redact)
        cur = conn.cursor()
        try:
            cur.execute(statement, params)
            rows = cur.fetchall() if cur.description is not None else []
            result = QueryResult(
                rows=[dict(row) for row in rows],
                rowcount=cur.rowcount,
                lastrowid=getattr(cur, "lastrowid", None),
            )
            if _transaction_depth == 0:
                conn.commit()
            return result
        except DatabaseError as exc:
            logger.error("Error executing query: %s", exc)
            if _transaction_depth == 0:
                conn.rollback()
            raise
        finally:
            cur.close()


@contextlib.contextmanager
def transaction() -> Iterator[None]:
    """Run the enclosed statements as one all-or-nothing unit.

    Nested blocks join the outermost transaction; only the outermost block
    commits or rolls back. Other threads wait until the outermost block exits.
    """
    global _transaction_depth
    conn = get_connection()
    with _lock:
        outermost = _transaction_depth == 0
        _transaction_depth += 1
        try:
            yield
        except BaseException:
            _transaction_depth -= 1
            if outermost:
                conn.rollback()
                logger.warning("Transaction rolled back")
            raise
        else:
            _transaction_depth -= 1
            if outermost:
                conn.commit()


_POSTGRES_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        username VARCHAR(64) UNIQUE NOT NULL,
        password_hash VARCHAR(255) NOT NULL,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS mysteries (
        id SERIAL PRIMARY KEY,
        title VARCHAR(255) NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        author_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS clues (
        id SERIAL PRIMARY KEY,
        name VARCHAR(255) UNIQUE NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS mystery_clues (
        id SERIAL PRIMARY KEY,
        mystery_id INTEGER NOT NULL REFERENCES mysteries(id) ON DELETE CASCADE,
        clue_id INTEGER NOT NULL REFERENCES clues(id),
        quantity TEXT NOT NULL,
        UNIQUE (mystery_id, clue_id)
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_mysteries_title
    ON mysteries (title);
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_mystery_clues_clue
    ON mystery_clues (clue_id);
    """,
)

_SQLITE_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        is_admin INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS mysteries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        author_id INTEGER,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY(author_id) REFERENCES users(id) ON DELETE SET NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS clues (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS mystery_clues (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        mystery_id INTEGER NOT NULL,
        clue_id INTEGER NOT NULL,
        quantity TEXT NOT NULL,
        UNIQUE (mystery_id, clue_id),
        FOREIGN KEY(mystery_id) REFERENCES mysteries(id) ON DELETE CASCADE,
        FOREIGN KEY(clue_id) REFERENCES clues(id)
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_mysteries_title
    ON mysteries (title);
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_mystery_clues_clue
    ON mystery_clues (clue_id);
    """,
)


def init_db() -> None:
    """Create the application tables if they do not already exist."""
    conn = get_connection()
    statements = _POSTGRES_SCHEMA if _backend == "postgres" else _SQLITE_SCHEMA
    with _lock:
        cur = conn.cursor()
        try:
            for statement in statements:
                cur.execute(statement)
            conn.commit()
        finally:
            cur.close()


def _first_row(result: QueryResult) -> Optional[dict]:
    return result.rows[0] if result.rows else None


def _row_to_scalar(row: Optional[dict]) -> int:
    if row is None:
        return 0
    return int(next(iter(row.values())) or 0)


def _insert_returning_id(statement: str, params: Sequence[object], **kwargs) -> int:
    if get_backend() == "postgres":
        result = db_query(f"{statement} RETURNING id", params, **kwargs)
        return int(result.rows[0]["id"])
    result = db_query(statement, params, **kwargs)
    return int(result.lastrowid)


def _like_operator() -> str:
    # sqlite LIKE is already case-insensitive for ASCII
    return "ILIKE" if get_backend() == "postgres" else "LIKE"


# Users ---------------------------------------------------------------------


def _row_to_user(row: Optional[dict]) -> Optional[User]:
    if not row:
        return None

    created_at = row.get("created_at")
    if isinstance(created_at, str):
        created_at = datetime.datetime.fromisoformat(created_at)

    return User(
        id=row["id"],
        username=row["username"],
        password_hash=row["password_hash"],
        is_admin=bool(row["is_admin"]),
        created_at=created_at,
    )


def get_user_by_id(user_id: int) -> Optional[User]:
    result = db_query("SELECT * FROM users WHERE id = %s", (user_id,))
    return _row_to_user(_first_row(result))


def get_user_by_username(username: str) -> Optional[User]:
    if not username:
        return None
    result = db_query("SELECT * FROM users WHERE username = %s", (username,))
    return _row_to_user(_first_row(result))


def username_exists(username: str) -> bool:
    result = db_query("SELECT 1 FROM users WHERE username = %s", (username,))
    return bool(result.rows)


def create_user(*, username: str, password_hash: str, is_admin: bool = False) -> User:
    try:
        new_id = _insert_returning_id(
            "INSERT INTO users (username, password_hash, is_admin) VALUES (%s, %s, %s)",
            (username, password_hash, is_admin),
            redact=True,
        )
    except IntegrityError as exc:
        raise ValueError("Username already taken, please choose another one.") from exc

    user = get_user_by_id(new_id)
    if user is None:
        raise RuntimeError("Failed to retrieve created user.")
    return user


# Mysteries -----------------------------------------------------------------


def count_mysteries() -> int:
    return _row_to_scalar(_first_row(db_query("SELECT COUNT(*) AS total FROM mysteries")))


def list_mysteries(*, limit: int, offset: int) -> list[dict]:
    return db_query(
        """
        SELECT id, title, description, author_id
        FROM mysteries
        ORDER BY title ASC, id ASC
        LIMIT %s OFFSET %s
        """,
        (limit, offset),
    ).rows


def get_mystery(mystery_id: int) -> Optional[dict]:
    return _first_row(
        db_query(
            "SELECT id, title, description, author_id FROM mysteries WHERE id = %s",
            (mystery_id,),
        )
    )


def get_mystery_with_clues(mystery_id: int) -> Optional[dict]:
    """Return the mystery row with a ``clues`` list, or None when missing."""
    mystery = get_mystery(mystery_id)
    if mystery is None:
        return None
    mystery["clues"] = list_clues_for_mystery(mystery_id)
    return mystery


def insert_mystery(*, title: str, description: str, author_id: Optional[int]) -> int:
    return _insert_returning_id(
        "INSERT INTO mysteries (title, description, author_id) VALUES (%s, %s, %s)",
        (title, description, author_id),
    )


def update_mystery_fields(mystery_id: int, *, title: str, description: str) -> int:
    result = db_query(
        "UPDATE mysteries SET title = %s, description = %s WHERE id = %s",
        (title, description, mystery_id),
    )
    return result.rowcount


def delete_mystery(mystery_id: int, *, user_id: int, is_admin: bool) -> bool:
    """Delete a mystery owned by ``user_id`` (any mystery for admins).

    Associations go first, inside the same transaction.
    """
    with transaction():
        mystery = get_mystery(mystery_id)
        if mystery is None:
            return False
        if not is_admin and mystery.get("author_id") != user_id:
            return False
        db_query("DELETE FROM mystery_clues WHERE mystery_id = %s", (mystery_id,))
        result = db_query("DELETE FROM mysteries WHERE id = %s", (mystery_id,))
        return result.rowcount > 0


def search_mysteries(term: str, *, limit: int, offset: int) -> list[dict]:
    op = _like_operator()
    pattern = f"%{term}%"
    return db_query(
        f"""
        SELECT id, title, description
        FROM mysteries
        WHERE title {op} %s OR description {op} %s
        ORDER BY title ASC, id ASC
        LIMIT %s OFFSET %s
        """,
        (pattern, pattern, limit, offset),
    ).rows


def count_search_mysteries(term: str) -> int:
    op = _like_operator()
    pattern = f"%{term}%"
    row = _first_row(
        db_query(
            f"SELECT COUNT(*) AS total FROM mysteries WHERE title {op} %s OR description {op} %s",
            (pattern, pattern),
        )
    )
    return _row_to_scalar(row)


def search_mysteries_by_clue(term: str, *, limit: int, offset: int) -> list[dict]:
    op = _like_operator()
    return db_query(
        f"""
        SELECT DISTINCT m.id, m.title, m.description
        FROM mysteries m
        JOIN mystery_clues mc ON m.id = mc.mystery_id
        JOIN clues c ON mc.clue_id = c.id
        WHERE c.name {op} %s
        ORDER BY m.title ASC, m.id ASC
        LIMIT %s OFFSET %s
        """,
        (f"%{term}%", limit, offset),
    ).rows


def count_search_mysteries_by_clue(term: str) -> int:
    op = _like_operator()
    row = _first_row(
        db_query(
            f"""
            SELECT COUNT(DISTINCT m.id) AS total
            FROM mysteries m
            JOIN mystery_clues mc ON m.id = mc.mystery_id
            JOIN clues c ON mc.clue_id = c.id
            WHERE c.name {op} %s
            """,
            (f"%{term}%",),
        )
    )
    return _row_to_scalar(row)


# Clues ---------------------------------------------------------------------


def list_all_clues() -> list[dict]:
    return db_query("SELECT id, name FROM clues ORDER BY name ASC").rows


def count_clues() -> int:
    return _row_to_scalar(_first_row(db_query("SELECT COUNT(*) AS total FROM clues")))


def list_clues(*, limit: int, offset: int) -> list[dict]:
    return db_query(
        "SELECT id, name FROM clues ORDER BY name ASC LIMIT %s OFFSET %s",
        (limit, offset),
    ).rows


def get_clue(clue_id: int) -> Optional[dict]:
    return _first_row(db_query("SELECT id, name FROM clues WHERE id = %s", (clue_id,)))


def search_clues(term: str, *, limit: int, offset: int) -> list[dict]:
    op = _like_operator()
    return db_query(
        f"SELECT id, name FROM clues WHERE name {op} %s ORDER BY name ASC LIMIT %s OFFSET %s",
        (f"%{term}%", limit, offset),
    ).rows


def count_search_clues(term: str) -> int:
    op = _like_operator()
    row = _first_row(
        db_query(f"SELECT COUNT(*) AS total FROM clues WHERE name {op} %s", (f"%{term}%",))
    )
    return _row_to_scalar(row)


def create_clue(name: str) -> int:
    """Insert a clue; duplicate names surface as the driver's IntegrityError."""
    return _insert_returning_id("INSERT INTO clues (name) VALUES (%s)", (name,))


def rename_clue(clue_id: int, name: str) -> bool:
    result = db_query("UPDATE clues SET name = %s WHERE id = %s", (name, clue_id))
    return result.rowcount > 0


def delete_clue(clue_id: int) -> bool:
    result = db_query("DELETE FROM clues WHERE id = %s", (clue_id,))
    return result.rowcount > 0


# Mystery clues -------------------------------------------------------------


def list_clues_for_mystery(mystery_id: int) -> list[dict]:
    return db_query(
        """
        SELECT c.id, c.name, mc.quantity
        FROM mystery_clues mc
        JOIN clues c ON c.id = mc.clue_id
        WHERE mc.mystery_id = %s
        ORDER BY c.name ASC
        """,
        (mystery_id,),
    ).rows


def list_mystery_clue_ids(mystery_id: int) -> set[int]:
    result = db_query(
        "SELECT clue_id FROM mystery_clues WHERE mystery_id = %s",
        (mystery_id,),
    )
    return {int(row["clue_id"]) for row in result.rows}


def upsert_mystery_clue(mystery_id: int, clue_id: int, quantity: str) -> None:
    """Insert the association or overwrite its quantity in one statement."""
    db_query(
        """
        INSERT INTO mystery_clues (mystery_id, clue_id, quantity)
        VALUES (%s, %s, %s)
        ON CONFLICT (mystery_id, clue_id) DO UPDATE SET quantity = excluded.quantity
        """,
        (mystery_id, clue_id, quantity),
    )


def delete_mystery_clue(mystery_id: int, clue_id: int) -> int:
    result = db_query(
        "DELETE FROM mystery_clues WHERE mystery_id = %s AND clue_id = %s",
        (mystery_id, clue_id),
    )
    return result.rowcount


def count_mystery_clues(mystery_id: int) -> int:
    row = _first_row(
        db_query(
            "SELECT COUNT(*) AS total FROM mystery_clues WHERE mystery_id = %s",
            (mystery_id,),
        )
    )
    return _row_to_scalar(row)
