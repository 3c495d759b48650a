"""
auth/store.py -- SQLAlchemy Core persistence layer for the user directory.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route, CLI and session code never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  username and email are each UNIQUE, and identifier_taken() checks a new
  value against BOTH columns, so one identifier can never match two users
  in find_by_identifier().

Failure semantics:
  Every SQLAlchemyError is re-raised as core.errors.DirectoryError. Callers
  see one opaque exception type and map it to a generic 500. No retries here.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, or_, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import User
from core.errors import DirectoryError, IdentifierTaken

logger = logging.getLogger("sessionwarden.directory")

# Shared with the signup request model. A username can never contain "@", so
# it cannot collide with any email.
USERNAME_PATTERN = r"^[A-Za-z0-9_.-]{3,64}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

_USERNAME_RE = re.compile(USERNAME_PATTERN)
_EMAIL_RE = re.compile(EMAIL_PATTERN)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records.

    Usage:
        store = UserStore("sqlite:///users.db")
        store.create_user(User(username="alice", email="alice@example.com", hashed_password=hash_password("pw")))
        user = store.find_by_identifier("alice@example.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        try:
            self.engine: Engine = create_engine(db_url, connect_args=connect_args)
            if db_url.startswith("sqlite"):
                event.listen(self.engine, "connect", _set_wal_mode)
            _metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise DirectoryError("User directory initialisation failed.") from exc

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_by_identifier(self, identifier: str) -> User | None:
        """Look up a user whose username OR email equals identifier.

        Emails are compared case-insensitively, usernames exactly. Returns None
        if no user matches.
        """
        query = _users.select().where(
            or_(_users.c.username == identifier, _users.c.email == identifier.strip().lower())
        )
        try:
            with self.engine.connect() as conn:
                row = conn.execute(query).fetchone()
        except SQLAlchemyError as exc:
            raise DirectoryError("User lookup failed.") from exc
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        except SQLAlchemyError as exc:
            raise DirectoryError("User lookup failed.") from exc
        return _row_to_user(row) if row is not None else None

    def identifier_taken(self, username: str, email: str) -> bool:
        """Return True if either value already exists in either namespace."""
        candidates = [username, email.strip().lower()]
        query = select(_users.c.id).where(
            or_(_users.c.username.in_(candidates), _users.c.email.in_(candidates))
        )
        try:
            with self.engine.connect() as conn:
                row = conn.execute(query).first()
        except SQLAlchemyError as exc:
            raise DirectoryError("User lookup failed.") from exc
        return row is not None

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises ValueError for a malformed username or email, and IdentifierTaken
        if either exists in either namespace. The UNIQUE constraints catch the
        race where two signups pass identifier_taken() concurrently.
        """
        if not _USERNAME_RE.fullmatch(user.username):
            raise ValueError("Username must be 3-64 letters, digits, underscores, dots or hyphens.")
        if len(user.email) > 320 or not _EMAIL_RE.fullmatch(user.email.strip()):
            raise ValueError("Email address is malformed.")
        if self.identifier_taken(user.username, user.email):
            raise IdentifierTaken("Email or username already exists.")
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.insert().values(
                        username=user.username,
                        email=user.email.strip().lower(),
                        hashed_password=user.hashed_password,
                        created_at=_now_iso(),
                        is_active=1 if user.is_active else 0,
                    )
                )
                conn.commit()
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise IdentifierTaken("Email or username already exists.") from exc
        except SQLAlchemyError as exc:
            raise DirectoryError("User creation failed.") from exc

    def set_active(self, user_id: int, is_active: bool) -> bool:
        """Enable or disable a login. Returns True if a row was updated."""
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.update().where(_users.c.id == user_id).values(is_active=1 if is_active else 0)
                )
                conn.commit()
        except SQLAlchemyError as exc:
            raise DirectoryError("User update failed.") from exc
        return result.rowcount > 0

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.warning("User directory health check failed", exc_info=True)
            return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        created_at=row.created_at,
        is_active=bool(row.is_active),
    )
