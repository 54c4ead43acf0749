"""
auth/store.py -- SQLAlchemy Core persistence layer for users and app settings.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _user_to_values /
_row_to_app_settings are the mappers. Route, reconciler, and policy code
never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Emails are lower-cased on write and compared lower-cased on read, so
  provider emails with different casing still match the same local row.

  The administrator is inserted with an explicit id=1. Two concurrent
  first-run sign-ins therefore collide on the primary key instead of both
  becoming "main" users; create_user() surfaces that as IntegrityError.

DB path: marquee.db at the repository root unless DATABASE_URL is set.

Layer rule: no imports from api/.

Schema notes:
  app_settings is a single-row table (id=1 enforced by a CHECK constraint).
  _ensure_app_settings() seeds the row so reads never come back empty.
"""

from __future__ import annotations

from dataclasses import asdict, fields
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import AppSettings, User
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(255)),
    Column("password", Text),  # NULL for provider-only users
    Column("permissions", Integer, nullable=False, server_default="0"),
    Column("avatar", Text, nullable=False),
    Column("plex_id", Integer),
    Column("plex_token", Text),
    Column("plex_username", String(255)),
    Column("jellyfin_user_id", String(64)),
    Column("jellyfin_username", String(255)),
    Column("jellyfin_auth_token", Text),
    Column("jellyfin_device_id", Text),
    Column("reset_password_guid", String(36)),
    Column("recovery_link_expiration_date", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_app_settings = Table(
    "app_settings",
    _metadata,
    Column("id", Integer, primary_key=True),
    Column("local_login", Boolean, nullable=False, default=True),
    Column("new_plex_login", Boolean, nullable=False, default=True),
    Column("default_permissions", Integer, nullable=False),
    Column("media_server_type", String(16), nullable=False, default="plex"),
    Column("plex_machine_id", Text, nullable=False, default=""),
    Column("jellyfin_hostname", Text, nullable=False, default=""),
    Column("jellyfin_external_hostname", Text, nullable=False, default=""),
    Column("jellyfin_server_id", Text, nullable=False, default=""),
    CheckConstraint("id = 1", name="app_settings_single_row"),
)

# Columns the mapper writes on save. id and created_at are insert-only.
_MUTABLE_USER_FIELDS = (
    "email",
    "username",
    "password",
    "permissions",
    "avatar",
    "plex_id",
    "plex_token",
    "plex_username",
    "jellyfin_user_id",
    "jellyfin_username",
    "jellyfin_auth_token",
    "jellyfin_device_id",
    "reset_password_guid",
    "recovery_link_expiration_date",
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block on the login writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records and the AppSettings row.

    Usage:
        store = UserStore()
        user = store.save_user(User(email="admin@example.com", permissions=Permission.ADMIN))
        same = store.get_by_email("ADMIN@example.com")
        store.close()
    """

    # Known keys for app_settings -- validated before any write so dynamic
    # keyword arguments can never name an arbitrary column.
    _APP_SETTINGS_KEYS: frozenset = frozenset(f.name for f in fields(AppSettings))

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._ensure_app_settings()

    def _ensure_app_settings(self) -> None:
        """Seed the single app_settings row if it does not exist yet. Idempotent."""
        with self.engine.connect() as conn:
            exists = conn.execute(select(_app_settings.c.id).where(_app_settings.c.id == 1)).first()
            if exists is None:
                conn.execute(_app_settings.insert().values(id=1, **asdict(AppSettings())))
                conn.commit()

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return result or 0

    def has_users(self) -> bool:
        """Return True if at least one user exists (first-run detection)."""
        return self.count_users() > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        If user.id is set (the id=1 administrator bootstrap) it is inserted
        explicitly. Raises sqlalchemy.exc.IntegrityError if that id or the
        email already exists; callers treat this as a lost bootstrap race.
        """
        now = _now_iso()
        values = _user_to_values(user)
        values.update(created_at=now, updated_at=now)
        if user.id is not None:
            values["id"] = user.id
        with self.engine.connect() as conn:
            result = conn.execute(_users.insert().values(**values))
            conn.commit()
            user_id = result.inserted_primary_key[0]
        user.id = user_id
        user.created_at = user.updated_at = now
        return user_id

    def save_user(self, user: User) -> User:
        """Insert the user if it has no id yet, otherwise update every mutable column."""
        if user.id is None or self.get_by_id(user.id) is None:
            self.create_user(user)
            return user
        now = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user.id).values(**_user_to_values(user), updated_at=now))
            conn.commit()
        user.updated_at = now
        return user

    def get_by_id(self, user_id: int) -> User | None:
        return self._first(_users.c.id == user_id)

    def get_by_email(self, email: str) -> User | None:
        """Case-insensitive email lookup."""
        return self._first(func.lower(_users.c.email) == email.strip().lower())

    def get_by_plex_id(self, plex_id: int) -> User | None:
        return self._first(_users.c.plex_id == plex_id)

    def get_by_plex_id_or_email(self, plex_id: int | None, email: str | None) -> User | None:
        """Match a Plex account: by Plex id first, then by email. First match wins."""
        if plex_id is not None:
            user = self.get_by_plex_id(plex_id)
            if user is not None:
                return user
        if email:
            return self.get_by_email(email)
        return None

    def get_by_jellyfin_user_id(self, jellyfin_user_id: str) -> User | None:
        return self._first(_users.c.jellyfin_user_id == jellyfin_user_id)

    def get_by_jellyfin_username(self, username: str) -> User | None:
        return self._first(_users.c.jellyfin_username == username)

    def get_by_reset_guid(self, guid: str) -> User | None:
        return self._first(_users.c.reset_password_guid == guid)

    def _first(self, clause) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(clause).order_by(_users.c.id)).first()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # App settings
    # ------------------------------------------------------------------

    def get_app_settings(self) -> AppSettings:
        with self.engine.connect() as conn:
            row = conn.execute(_app_settings.select().where(_app_settings.c.id == 1)).first()
        if row is None:
            # Should never happen; _ensure_app_settings() seeds this row.
            return AppSettings()
        return _row_to_app_settings(row)

    def update_app_settings(self, **kwargs) -> AppSettings:
        """Update one or more app_settings fields and return the new row.

        Unknown keys raise ValueError rather than being silently ignored.
        """
        unknown = set(kwargs) - self._APP_SETTINGS_KEYS
        if unknown:
            raise ValueError(f"Unknown app_settings keys: {unknown!r}")
        if kwargs:
            with self.engine.connect() as conn:
                conn.execute(_app_settings.update().where(_app_settings.c.id == 1).values(**kwargs))
                conn.commit()
        return self.get_app_settings()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _user_to_values(user: User) -> dict:
    values = {name: getattr(user, name) for name in _MUTABLE_USER_FIELDS}
    values["email"] = user.email.strip().lower()
    values["permissions"] = int(user.permissions)
    expires = user.recovery_link_expiration_date
    values["recovery_link_expiration_date"] = expires.isoformat() if expires is not None else None
    return values


def _row_to_user(row) -> User:
    expires = row.recovery_link_expiration_date
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        password=row.password,
        permissions=row.permissions,
        avatar=row.avatar,
        plex_id=row.plex_id,
        plex_token=row.plex_token,
        plex_username=row.plex_username,
        jellyfin_user_id=row.jellyfin_user_id,
        jellyfin_username=row.jellyfin_username,
        jellyfin_auth_token=row.jellyfin_auth_token,
        jellyfin_device_id=row.jellyfin_device_id,
        reset_password_guid=row.reset_password_guid,
        recovery_link_expiration_date=datetime.fromisoformat(expires) if expires else None,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_app_settings(row) -> AppSettings:
    return AppSettings(
        local_login=bool(row.local_login),
        new_plex_login=bool(row.new_plex_login),
        default_permissions=row.default_permissions,
        media_server_type=row.media_server_type,
        plex_machine_id=row.plex_machine_id,
        jellyfin_hostname=row.jellyfin_hostname,
        jellyfin_external_hostname=row.jellyfin_external_hostname,
        jellyfin_server_id=row.jellyfin_server_id,
    )
