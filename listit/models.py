from typing import Optional
from datetime import datetime
import uuid

from sqlmodel import SQLModel, Field

from .utils import now_utc


def _uuid() -> str:
    return str(uuid.uuid4())


class TaskList(SQLModel, table=True):
    """Top-level user-owned grouping. Owns collections."""
    __tablename__ = 'list'

    id: Optional[int] = Field(default=None, primary_key=True)
    list_name: str = Field(index=True)
    bg_color_hex: str = Field(default='#FF3B30')
    list_icon: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)
    is_default: bool = Field(default=False)
    is_pinned: bool = Field(default=False)
    user_id: Optional[str] = Field(default=None, index=True)


class Collection(SQLModel, table=True):
    # Exactly one default ("General") collection per list is intended but only
    # maintained by application code; nothing here enforces it.
    __tablename__ = 'collection'

    id: Optional[int] = Field(default=None, primary_key=True)
    collection_name: str
    bg_color_hex: str = Field(default='#FF3B30')
    created_at: datetime | None = Field(default_factory=now_utc)
    is_default: bool = Field(default=False)
    list_id: Optional[int] = Field(default=None, index=True)
    user_id: Optional[str] = Field(default=None, index=True)


class Task(SQLModel, table=True):
    __tablename__ = 'task'

    id: Optional[int] = Field(default=None, primary_key=True)
    text: str
    description: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)
    due_date: Optional[datetime] = None
    date_completed: Optional[datetime] = None
    is_completed: bool = Field(default=False, index=True)
    # "priority" in the UI
    is_pinned: bool = Field(default=False, index=True)
    is_deleted: bool = Field(default=False)
    collection_id: Optional[int] = Field(default=None, index=True)
    list_id: Optional[int] = Field(default=None, index=True)
    user_id: Optional[str] = Field(default=None, index=True)


class Note(SQLModel, table=True):
    __tablename__ = 'note'

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    description: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)
    is_pinned: bool = Field(default=False)
    is_deleted: bool = Field(default=False)
    bg_color_hex: Optional[str] = None
    collection_id: Optional[int] = Field(default=None, index=True)
    user_id: Optional[str] = Field(default=None, index=True)


class UserProfile(SQLModel, table=True):
    """Public profile row mirrored from the auth subsystem."""
    __tablename__ = 'users'

    id: str = Field(primary_key=True)
    email: str = Field(default='')
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)


# --- auth subsystem tables (local backend only) ---

class AuthUser(SQLModel, table=True):
    __tablename__ = 'auth_users'

    id: str = Field(default_factory=_uuid, primary_key=True)
    email: str = Field(index=True, sa_column_kwargs={"unique": True})
    password_hash: str
    email_confirmed_at: Optional[datetime] = None
    # JSON-encoded user metadata (full_name, avatar_url, ...)
    user_metadata: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)
    last_recovery_sent_at: Optional[datetime] = None


class AuthSession(SQLModel, table=True):
    """Server-side session. The refresh token identifies the row; access
    tokens carry its id in the ``sid`` claim so sign-out revokes them."""
    __tablename__ = 'auth_sessions'

    id: str = Field(default_factory=_uuid, primary_key=True)
    refresh_token: str = Field(sa_column_kwargs={"unique": True, "index": True})
    user_id: str = Field(index=True)
    created_at: datetime | None = Field(default_factory=now_utc)


class AuthCode(SQLModel, table=True):
    """One-time codes: e-mail confirmation, password recovery and PKCE auth codes."""
    __tablename__ = 'auth_codes'

    code: str = Field(primary_key=True)
    kind: str = Field(index=True)
    user_id: str = Field(index=True)
    code_challenge: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)
    expires_at: Optional[datetime] = None
    used: bool = Field(default=False)
