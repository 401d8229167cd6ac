"""
auth/store.py -- SQLAlchemy Core persistence layer for identities and roles.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_role are the mappers.
Route and issuer code never touches SQL directly.

Tables:
  users       -- identities; email stored lowercased and UNIQUE.
  roles       -- static reference data, seeded on first startup.
  user_roles  -- many-to-many assignment carrying assigned_by/assigned_at,
                 active and expires_at. UNIQUE(user_id, role_id): re-assigning
                 a revoked role reactivates the existing row.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Multi-row writes (user + initial role set) run inside engine.begin() so a
  failure rolls the whole operation back.

Layer rule: imports from core/ and auth.models only.
"""

from __future__ import annotations

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import ADMIN, AUDITOR, MANAGER, SUPERUSER, USER, VIEWER, Role, User
from core.db import create_store_engine, now_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("department", String(100)),
    Column("active", Integer, nullable=False, server_default="1"),
    Column("must_change_password", Integer, nullable=False, server_default="0"),
    Column("last_login_at", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40)),
    Column("created_by", Integer),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("display_name", String(100), nullable=False),
    Column("description", Text),
    Column("level", Integer, nullable=False),
    Column("is_super_user", Integer, nullable=False, server_default="0"),
    Column("active", Integer, nullable=False, server_default="1"),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id"), nullable=False),
    Column("assigned_by", Integer),
    Column("assigned_at", String(40), nullable=False),
    Column("active", Integer, nullable=False, server_default="1"),
    Column("expires_at", String(40)),
    UniqueConstraint("user_id", "role_id", name="uq_user_roles_user_role"),
)

# name, display_name, level, is_super_user, description
_SEED_ROLES = (
    (SUPERUSER, "Superuser", 100, True, "Full system access, including superuser role management"),
    (ADMIN, "Administrator", 90, False, "User, role and system administration"),
    (MANAGER, "Manager", 70, False, "Approves and manages quality records"),
    (AUDITOR, "Auditor", 60, False, "Internal auditor with read access to quality records"),
    (USER, "User", 50, False, "Standard user"),
    (VIEWER, "Viewer", 10, False, "Read-only access"),
)

# Columns callers may change through update_user(). Anything else is rejected
# before SQL is built.
_UPDATABLE_USER_FIELDS = frozenset({"first_name", "last_name", "department", "email", "active"})


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and Role entities.

    Usage:
        store = UserStore("sqlite:///eqms.db")
        uid = store.create_user(User(email="a@b.c", first_name="A", last_name="B",
                                     password_hash=hash_password("secret")),
                                role_names=["user"])
        roles = store.get_user_roles(uid)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = create_store_engine(db_url)
        _metadata.create_all(self.engine)
        self._seed_roles()

    def _seed_roles(self) -> None:
        """Insert any standard role that is missing. Idempotent."""
        with self.engine.begin() as conn:
            existing = set(conn.execute(select(_roles.c.name)).scalars())
            for name, display_name, level, is_super, description in _SEED_ROLES:
                if name in existing:
                    continue
                conn.execute(
                    _roles.insert().values(
                        name=name,
                        display_name=display_name,
                        description=description,
                        level=level,
                        is_super_user=1 if is_super else 0,
                        active=1,
                    )
                )

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(
        self,
        user: User,
        role_names: list[str] | None = None,
        assigned_by: int | None = None,
    ) -> int:
        """Insert a user plus its initial role assignments in one transaction.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Raises ValueError if a role name is unknown; nothing is written.
        """
        now = now_iso()
        with self.engine.begin() as conn:
            user_id = self._insert_user(conn, user, now)
            for name in role_names or []:
                role_id = conn.execute(select(_roles.c.id).where(_roles.c.name == name)).scalar()
                if role_id is None:
                    raise ValueError(f"Unknown role: {name!r}")
                self._upsert_assignment(conn, user_id, role_id, assigned_by or user.created_by, None, now)
        return user_id

    def create_first_superuser(self, user: User) -> int | None:
        """Create a user holding the superuser role, unless one already exists.

        The existence check and the inserts share a transaction. Returns the new
        user id, or None when the system already has an active superuser.
        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        now = now_iso()
        with self.engine.begin() as conn:
            if self._count_superusers(conn) > 0:
                return None
            user_id = self._insert_user(conn, user, now)
            role_id = conn.execute(select(_roles.c.id).where(_roles.c.name == SUPERUSER)).scalar()
            self._upsert_assignment(conn, user_id, role_id, user_id, None, now)
        return user_id

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(func.lower(_users.c.email) == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self, include_inactive: bool = True) -> list[User]:
        """Return users ordered by last name, first name."""
        query = _users.select().order_by(_users.c.last_name, _users.c.first_name)
        if not include_inactive:
            query = query.where(_users.c.active == 1)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable profile fields on an existing user.

        Accepted fields: first_name, last_name, department, email, active.
        active must be passed as bool; email is lowercased.

        Returns True if a row was updated, False if user_id was not found.
        Raises ValueError on unknown fields, IntegrityError on duplicate email.
        """
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        if "active" in fields:
            fields["active"] = 1 if fields["active"] else 0
        if "email" in fields:
            fields["email"] = fields["email"].strip().lower()
        fields["updated_at"] = now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login_at. Called on successful login only."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=now_iso()))
            conn.commit()

    def update_password(self, user_id: int, password_hash: str, must_change_password: bool = False) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    password_hash=password_hash,
                    must_change_password=1 if must_change_password else 0,
                    updated_at=now_iso(),
                )
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Roles and assignments
    # ------------------------------------------------------------------

    def list_roles(self) -> list[Role]:
        """Return active roles, highest level first."""
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().where(_roles.c.active == 1).order_by(_roles.c.level.desc())).fetchall()
        return [_row_to_role(r) for r in rows]

    def get_role(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_user_roles(self, user_id: int) -> list[Role]:
        """Return the user's current roles, highest level first.

        Current means: assignment active, assignment not expired, role active.
        """
        now = now_iso()
        query = (
            select(_roles)
            .select_from(_user_roles.join(_roles, _user_roles.c.role_id == _roles.c.id))
            .where(
                and_(
                    _user_roles.c.user_id == user_id,
                    _user_roles.c.active == 1,
                    _roles.c.active == 1,
                    or_(_user_roles.c.expires_at.is_(None), _user_roles.c.expires_at > now),
                )
            )
            .order_by(_roles.c.level.desc())
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_role(r) for r in rows]

    def assign_role(
        self,
        user_id: int,
        role_id: int,
        assigned_by: int | None,
        expires_at: str | None = None,
    ) -> None:
        """Assign a role, reactivating a previously revoked assignment if present."""
        with self.engine.begin() as conn:
            self._upsert_assignment(conn, user_id, role_id, assigned_by, expires_at, now_iso())

    def revoke_role(self, user_id: int, role_id: int) -> bool:
        """Deactivate an assignment. Returns False if the user never had the role active."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_roles.update()
                .where(
                    and_(
                        _user_roles.c.user_id == user_id,
                        _user_roles.c.role_id == role_id,
                        _user_roles.c.active == 1,
                    )
                )
                .values(active=0)
            )
            conn.commit()
        return result.rowcount > 0

    def has_superusers(self) -> bool:
        """Return True if at least one active user holds an active superuser role."""
        with self.engine.connect() as conn:
            return self._count_superusers(conn) > 0

    def user_is_superuser(self, user_id: int) -> bool:
        return any(role.is_super_user for role in self.get_user_roles(user_id))

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internal helpers (caller owns the transaction)
    # ------------------------------------------------------------------

    def _insert_user(self, conn: Connection, user: User, now: str) -> int:
        result = conn.execute(
            _users.insert().values(
                email=user.email.strip().lower(),
                password_hash=user.password_hash,
                first_name=user.first_name,
                last_name=user.last_name,
                department=user.department,
                active=1 if user.active else 0,
                must_change_password=1 if user.must_change_password else 0,
                created_at=now,
                created_by=user.created_by,
            )
        )
        return result.inserted_primary_key[0]

    def _upsert_assignment(
        self,
        conn: Connection,
        user_id: int,
        role_id: int,
        assigned_by: int | None,
        expires_at: str | None,
        now: str,
    ) -> None:
        existing = conn.execute(
            select(_user_roles.c.id).where(and_(_user_roles.c.user_id == user_id, _user_roles.c.role_id == role_id))
        ).scalar()
        values = {"assigned_by": assigned_by, "assigned_at": now, "active": 1, "expires_at": expires_at}
        if existing is None:
            conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id, **values))
        else:
            conn.execute(_user_roles.update().where(_user_roles.c.id == existing).values(**values))

    def _count_superusers(self, conn: Connection) -> int:
        now = now_iso()
        query = (
            select(func.count())
            .select_from(
                _user_roles.join(_roles, _user_roles.c.role_id == _roles.c.id).join(
                    _users, _user_roles.c.user_id == _users.c.id
                )
            )
            .where(
                and_(
                    _roles.c.is_super_user == 1,
                    _roles.c.active == 1,
                    _user_roles.c.active == 1,
                    _users.c.active == 1,
                    or_(_user_roles.c.expires_at.is_(None), _user_roles.c.expires_at > now),
                )
            )
        )
        return conn.execute(query).scalar() or 0


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        password_hash=row.password_hash,
        department=row.department,
        active=bool(row.active),
        must_change_password=bool(row.must_change_password),
        last_login_at=row.last_login_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        created_by=row.created_by,
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        display_name=row.display_name,
        description=row.description,
        level=row.level,
        is_super_user=bool(row.is_super_user),
        active=bool(row.active),
    )
