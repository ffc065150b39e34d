"""Backend client wrapper.

Everything the application persists goes through a backend-as-a-service
client with two halves: ``table(name)`` query builders for the data tables
and ``auth`` for sessions and accounts. ``create_backend()`` picks the
implementation from configuration:

* ``HostedBackend`` (listit/hosted.py) speaks the hosted service's REST API.
* ``LocalBackend`` (this module) serves the same interface from the local
  SQLModel database so development and tests need no network.

Query results are plain dicts with JSON-compatible values, whichever
implementation produced them.
"""
import base64
import hashlib
import json
import logging
import secrets
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from sqlalchemy import Boolean, DateTime, Integer, TypeDecorator
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select

from . import config
from .db import async_session
from .models import TaskList, Collection, Task, Note, UserProfile
from .models import AuthUser, AuthSession, AuthCode
from .utils import now_utc, parse_timestamp, to_iso, append_query

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Error reported by the backend (validation, constraint, auth, network)."""

    def __init__(self, message: str, status: int = 400, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code

    def __repr__(self):
        return f"BackendError({self.message!r}, status={self.status}, code={self.code!r})"


class ConfigError(RuntimeError):
    pass


# --- auth value types ---

class User(BaseModel):
    id: str
    email: str = ''
    user_metadata: dict = {}
    email_confirmed_at: Optional[str] = None

    @property
    def full_name(self) -> str:
        return self.user_metadata.get('full_name') or ''

    @property
    def avatar_url(self) -> Optional[str]:
        return self.user_metadata.get('avatar_url')


class Session(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    expires_at: Optional[int] = None
    user: User


class AuthResponse(BaseModel):
    user: Optional[User] = None
    session: Optional[Session] = None


class OAuthRedirect(BaseModel):
    provider: str
    url: str
    code_verifier: Optional[str] = None


def pkce_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode('ascii')).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b'=').decode('ascii')


def generate_pkce_pair() -> tuple[str, str]:
    verifier = secrets.token_urlsafe(48)
    return verifier, pkce_challenge(verifier)


# --- query builder ---

@dataclass
class QueryResult:
    data: list = field(default_factory=list)

    @property
    def first(self) -> Optional[dict]:
        return self.data[0] if self.data else None


class QueryBuilder:
    """Chainable table query, executed by the owning backend.

    Mirrors the familiar builder shape::

        await backend.table('task').update({'is_pinned': True}).eq('id', 3).execute()
    """

    def __init__(self, executor, table: str):
        self._executor = executor
        self.table = table
        self.action = 'select'
        self.columns = '*'
        self.payload: Any = None
        self.filters: list[tuple[str, str, Any]] = []
        self.orders: list[tuple[str, bool]] = []
        self.limit_count: Optional[int] = None
        self.single_row = False

    def select(self, columns: str = '*'):
        self.columns = columns
        return self

    def insert(self, rows):
        self.action = 'insert'
        self.payload = list(rows) if isinstance(rows, (list, tuple)) else [rows]
        return self

    def update(self, values: dict):
        self.action = 'update'
        self.payload = dict(values)
        return self

    def delete(self):
        self.action = 'delete'
        return self

    def _filter(self, op: str, column: str, value):
        self.filters.append((op, column, value))
        return self

    def eq(self, column: str, value):
        return self._filter('eq', column, value)

    def neq(self, column: str, value):
        return self._filter('neq', column, value)

    def in_(self, column: str, values):
        return self._filter('in', column, list(values))

    def ilike(self, column: str, pattern: str):
        return self._filter('ilike', column, pattern)

    def is_(self, column: str, value):
        return self._filter('is', column, value)

    def gte(self, column: str, value):
        return self._filter('gte', column, value)

    def gt(self, column: str, value):
        return self._filter('gt', column, value)

    def lte(self, column: str, value):
        return self._filter('lte', column, value)

    def lt(self, column: str, value):
        return self._filter('lt', column, value)

    def order(self, column: str, desc: bool = False):
        self.orders.append((column, desc))
        return self

    def limit(self, count: int):
        self.limit_count = count
        return self

    def single(self):
        self.single_row = True
        return self

    async def execute(self) -> QueryResult:
        if self.action in ('update', 'delete') and not self.filters:
            raise BackendError(f'{self.action.upper()} requires a WHERE clause', status=400, code='21000')
        return await self._executor.run_query(self)


def check_single(q: QueryBuilder, data: list) -> None:
    if q.single_row and len(data) != 1:
        raise BackendError(
            'JSON object requested, multiple (or no) rows returned',
            status=406,
            code='PGRST116',
        )


# --- local implementation ---

TABLES = {
    'list': TaskList,
    'collection': Collection,
    'task': Task,
    'note': Note,
    'users': UserProfile,
}

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
ALGORITHM = "HS256"
CODE_EXPIRE_MINUTES = 60


def _base_type(column):
    """Column type with TypeDecorator wrappers (e.g. sqlmodel's UTCDateTime) removed."""
    ctype = column.type
    while isinstance(ctype, TypeDecorator):
        ctype = ctype.impl_instance
    return ctype


def _coerce(column, value):
    """Convert wire values (ISO strings, 'true', '5') to the column's Python type."""
    if value is None:
        return None
    ctype = _base_type(column)
    if isinstance(ctype, DateTime):
        dt = parse_timestamp(value)
        if dt is None:
            raise BackendError(f'invalid input syntax for type timestamp: "{value}"', code='22007')
        return dt
    if isinstance(ctype, Boolean):
        if isinstance(value, str):
            return value.lower() in ('1', 'true', 'yes', 'on', 't')
        return bool(value)
    if isinstance(ctype, Integer) and isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            raise BackendError(f'invalid input syntax for type integer: "{value}"', code='22P02')
    return value


def _serialize(value):
    if isinstance(value, datetime):
        return to_iso(value)
    return value


class LocalBackend:
    """Backend served from the local database through SQLModel."""

    def __init__(self, session_factory=None, service_role: bool = False):
        self._session_factory = session_factory or async_session
        self.service_role = service_role
        self.auth = LocalAuth(self)

    def table(self, name: str) -> QueryBuilder:
        return QueryBuilder(self, name)

    def with_access_token(self, access_token: Optional[str]):
        # no row-level security locally; handlers scope queries by user_id
        return self

    async def aclose(self):
        return None

    def _model(self, table: str):
        model = TABLES.get(table)
        if model is None:
            raise BackendError(f'relation "public.{table}" does not exist', status=404, code='42P01')
        return model

    def _column(self, model, name: str):
        try:
            return model.__table__.c[name]
        except KeyError:
            raise BackendError(f'column {model.__tablename__}.{name} does not exist', code='42703')

    def _clause(self, model, op: str, name: str, value):
        col = self._column(model, name)
        if op == 'eq':
            return col == _coerce(col, value)
        if op == 'neq':
            return col != _coerce(col, value)
        if op == 'in':
            return col.in_([_coerce(col, v) for v in value])
        if op == 'ilike':
            return col.ilike(value, escape='\\')
        if op == 'is':
            return col.is_(None) if value is None else col.is_(_coerce(col, value))
        if op == 'gte':
            return col >= _coerce(col, value)
        if op == 'gt':
            return col > _coerce(col, value)
        if op == 'lte':
            return col <= _coerce(col, value)
        if op == 'lt':
            return col < _coerce(col, value)
        raise BackendError(f'unsupported filter operator {op}', code='PGRST100')

    def _values(self, model, row: dict) -> dict:
        out = {}
        for key, value in row.items():
            try:
                col = model.__table__.c[key]
            except KeyError:
                raise BackendError(
                    f"Could not find the '{key}' column of '{model.__tablename__}' in the schema cache",
                    code='PGRST204',
                )
            out[key] = _coerce(col, value)
        return out

    def _record(self, model, obj) -> dict:
        return {c.name: _serialize(getattr(obj, c.name)) for c in model.__table__.columns}

    @staticmethod
    def _project(record: dict, columns: str) -> dict:
        if not columns or columns.strip() == '*':
            return record
        keys = [c.strip() for c in columns.split(',') if c.strip()]
        return {k: record.get(k) for k in keys}

    async def run_query(self, q: QueryBuilder) -> QueryResult:
        model = self._model(q.table)
        where = [self._clause(model, op, name, value) for op, name, value in q.filters]
        async with self._session_factory() as sess:
            try:
                if q.action == 'insert':
                    objs = [model(**self._values(model, row)) for row in q.payload]
                    sess.add_all(objs)
                    await sess.commit()
                    for obj in objs:
                        await sess.refresh(obj)
                    rows = objs
                else:
                    stmt = select(model).where(*where)
                    if q.action == 'select':
                        for name, desc in q.orders:
                            col = self._column(model, name)
                            stmt = stmt.order_by(col.desc() if desc else col.asc())
                        if q.limit_count is not None:
                            stmt = stmt.limit(q.limit_count)
                    res = await sess.exec(stmt)
                    rows = list(res.all())
                    if q.action == 'update':
                        values = self._values(model, q.payload)
                        for obj in rows:
                            for key, value in values.items():
                                setattr(obj, key, value)
                            sess.add(obj)
                        await sess.commit()
                        for obj in rows:
                            await sess.refresh(obj)
                    elif q.action == 'delete':
                        # capture before the rows are expunged
                        deleted = [self._record(model, obj) for obj in rows]
                        for obj in rows:
                            await sess.delete(obj)
                        await sess.commit()
                        data = [self._project(r, q.columns) for r in deleted]
                        check_single(q, data)
                        return QueryResult(data)
            except IntegrityError as e:
                await sess.rollback()
                logger.warning('constraint violation on %s: %s', q.table, e)
                raise BackendError(str(getattr(e, 'orig', e)), status=409, code='23505')
            except SQLAlchemyError as e:
                await sess.rollback()
                logger.exception('local backend query failed on %s', q.table)
                raise BackendError(str(getattr(e, 'orig', e)), status=500, code='XX000')
        data = [self._project(self._record(model, obj), q.columns) for obj in rows]
        check_single(q, data)
        return QueryResult(data)


def _to_user(row: AuthUser) -> User:
    meta = {}
    if row.user_metadata:
        try:
            meta = json.loads(row.user_metadata)
        except ValueError:
            logger.warning('ignoring malformed user_metadata for %s', row.id)
    return User(id=row.id, email=row.email, user_metadata=meta, email_confirmed_at=to_iso(row.email_confirmed_at))


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class LocalAuth:
    """Auth subsystem of the local backend.

    E-mails are not sent: each message is logged and kept in ``outbox`` so
    developers (and tests) can follow confirmation and recovery links.
    """

    def __init__(self, backend: LocalBackend):
        self._backend = backend
        self.outbox: deque = deque(maxlen=100)
        self.admin = LocalAdmin(self)

    def _session(self):
        return self._backend._session_factory()

    def _send_mail(self, to: str, kind: str, link: str):
        self.outbox.append({'to': to, 'kind': kind, 'link': link, 'sent_at': to_iso(now_utc())})
        logger.info('dev mail (%s) to %s: %s', kind, to, link)

    async def _issue_session(self, user: AuthUser) -> Session:
        refresh = secrets.token_urlsafe(32)
        async with self._session() as s:
            row = AuthSession(refresh_token=refresh, user_id=user.id)
            s.add(row)
            await s.commit()
            await s.refresh(row)
            sid = row.id
        now = now_utc()
        expires_at = now + timedelta(seconds=config.ACCESS_TOKEN_EXPIRE_SECONDS)
        claims = {
            'sub': user.id,
            'sid': sid,
            'email': user.email,
            'role': 'authenticated',
            'iat': int(now.timestamp()),
            'exp': int(expires_at.timestamp()),
        }
        token = jwt.encode(claims, config.SECRET_KEY, algorithm=ALGORITHM)
        return Session(
            access_token=token,
            refresh_token=refresh,
            expires_in=config.ACCESS_TOKEN_EXPIRE_SECONDS,
            expires_at=int(expires_at.timestamp()),
            user=_to_user(user),
        )

    async def _user_by_email(self, email: str) -> Optional[AuthUser]:
        async with self._session() as s:
            q = await s.exec(select(AuthUser).where(AuthUser.email == email.strip().lower()))
            return q.first()

    async def _create_code(self, user_id: str, kind: str, code_challenge: Optional[str] = None) -> str:
        code = secrets.token_urlsafe(24)
        async with self._session() as s:
            s.add(AuthCode(
                code=code,
                kind=kind,
                user_id=user_id,
                code_challenge=code_challenge,
                expires_at=now_utc() + timedelta(minutes=CODE_EXPIRE_MINUTES),
            ))
            await s.commit()
        return code

    async def _consume_code(self, code: str, kinds: tuple[str, ...], code_verifier: Optional[str] = None) -> AuthUser:
        async with self._session() as s:
            row = await s.get(AuthCode, code)
            if not row or row.used or row.kind not in kinds:
                raise BackendError('Email link is invalid or has expired', status=403, code='otp_expired')
            if row.expires_at and _aware(row.expires_at) < now_utc():
                raise BackendError('Email link is invalid or has expired', status=403, code='otp_expired')
            if row.code_challenge:
                if not code_verifier or pkce_challenge(code_verifier) != row.code_challenge:
                    raise BackendError('code challenge does not match previously saved code verifier', status=400, code='bad_code_verifier')
            row.used = True
            s.add(row)
            user = await s.get(AuthUser, row.user_id)
            if user is None:
                raise BackendError('User not found', status=404, code='user_not_found')
            if row.kind == 'signup' and user.email_confirmed_at is None:
                user.email_confirmed_at = now_utc()
                s.add(user)
            await s.commit()
            await s.refresh(user)
            return user

    async def sign_up(self, email: str, password: str, data: Optional[dict] = None,
                      email_redirect_to: Optional[str] = None) -> AuthResponse:
        email = email.strip().lower()
        if await self._user_by_email(email):
            raise BackendError('User already registered', status=422, code='user_already_exists')
        user = AuthUser(
            email=email,
            password_hash=pwd_context.hash(password),
            user_metadata=json.dumps(data or {}),
        )
        async with self._session() as s:
            s.add(user)
            await s.commit()
            await s.refresh(user)
        token_hash = await self._create_code(user.id, 'signup')
        link = append_query(email_redirect_to or f'{config.SITE_URL}/verification', token_hash=token_hash, type='signup')
        self._send_mail(email, 'signup', link)
        return AuthResponse(user=_to_user(user), session=None)

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        user = await self._user_by_email(email)
        if not user or not pwd_context.verify(password, user.password_hash):
            raise BackendError('Invalid login credentials', status=400, code='invalid_credentials')
        if user.email_confirmed_at is None:
            raise BackendError('Email not confirmed', status=400, code='email_not_confirmed')
        return await self._issue_session(user)

    async def sign_in_with_oauth(self, provider: str, redirect_to: Optional[str] = None) -> OAuthRedirect:
        raise BackendError('Unsupported provider: provider is not enabled', status=400, code='validation_failed')

    async def get_user(self, access_token: Optional[str]) -> Optional[User]:
        if not access_token:
            return None
        try:
            claims = jwt.decode(access_token, config.SECRET_KEY, algorithms=[ALGORITHM])
        except JWTError:
            return None
        async with self._session() as s:
            sess_row = await s.get(AuthSession, claims.get('sid') or '')
            if sess_row is None:
                return None
            user = await s.get(AuthUser, claims.get('sub') or '')
        return _to_user(user) if user else None

    async def refresh_session(self, refresh_token: str) -> Session:
        async with self._session() as s:
            q = await s.exec(select(AuthSession).where(AuthSession.refresh_token == refresh_token))
            row = q.first()
            if row is None:
                raise BackendError('Invalid Refresh Token: Refresh Token Not Found', status=400, code='refresh_token_not_found')
            user = await s.get(AuthUser, row.user_id)
            # rotate: the old refresh token is single-use
            await s.delete(row)
            await s.commit()
        if user is None:
            raise BackendError('User not found', status=404, code='user_not_found')
        return await self._issue_session(user)

    async def sign_out(self, access_token: Optional[str], scope: str = 'global') -> None:
        if not access_token:
            return
        try:
            claims = jwt.decode(access_token, config.SECRET_KEY, algorithms=[ALGORITHM],
                                options={'verify_exp': False})
        except JWTError:
            return
        async with self._session() as s:
            if scope == 'global':
                q = await s.exec(select(AuthSession).where(AuthSession.user_id == (claims.get('sub') or '')))
                rows = list(q.all())
            else:
                row = await s.get(AuthSession, claims.get('sid') or '')
                rows = [row] if row is not None else []
            for row in rows:
                await s.delete(row)
            await s.commit()

    async def reset_password_for_email(self, email: str, redirect_to: Optional[str] = None,
                                       code_challenge: Optional[str] = None) -> None:
        user = await self._user_by_email(email)
        if user is None:
            # same response for unknown addresses
            return
        now = now_utc()
        last = _aware(user.last_recovery_sent_at)
        if last is not None:
            elapsed = (now - last).total_seconds()
            if elapsed < config.RESET_COOLDOWN_SECONDS:
                remaining = int(config.RESET_COOLDOWN_SECONDS - elapsed) + 1
                raise BackendError(
                    f'For security purposes, you can only request this after {remaining} seconds.',
                    status=429,
                    code='over_email_send_rate_limit',
                )
        async with self._session() as s:
            row = await s.get(AuthUser, user.id)
            row.last_recovery_sent_at = now
            s.add(row)
            await s.commit()
        code = await self._create_code(user.id, 'recovery', code_challenge)
        self._send_mail(user.email, 'recovery', append_query(redirect_to or f'{config.SITE_URL}/resetPassword', code=code))

    async def update_user(self, access_token: Optional[str], password: Optional[str] = None,
                          data: Optional[dict] = None) -> User:
        current = await self.get_user(access_token)
        if current is None:
            raise BackendError('Auth session missing!', status=401, code='session_not_found')
        async with self._session() as s:
            row = await s.get(AuthUser, current.id)
            if password is not None:
                if pwd_context.verify(password, row.password_hash):
                    raise BackendError('New password should be different from the old password.', status=422, code='same_password')
                row.password_hash = pwd_context.hash(password)
            if data:
                meta = json.loads(row.user_metadata or '{}')
                meta.update(data)
                row.user_metadata = json.dumps(meta)
            s.add(row)
            await s.commit()
            await s.refresh(row)
        return _to_user(row)

    async def verify_otp(self, token_hash: str, type: str) -> Session:
        kinds = ('signup',) if type in ('signup', 'email') else ('recovery',) if type == 'recovery' else ()
        if not kinds:
            raise BackendError(f'Verify requires a valid type, got {type}', status=400, code='validation_failed')
        user = await self._consume_code(token_hash, kinds)
        return await self._issue_session(user)

    async def exchange_code_for_session(self, code: str, code_verifier: Optional[str] = None) -> Session:
        user = await self._consume_code(code, ('recovery', 'pkce'), code_verifier)
        return await self._issue_session(user)


class LocalAdmin:
    def __init__(self, auth: LocalAuth):
        self._auth = auth

    def _require_service_role(self):
        if not self._auth._backend.service_role:
            raise BackendError('User not allowed', status=403, code='not_admin')

    async def create_user(self, email: str, password: str, email_confirm: bool = False,
                          user_metadata: Optional[dict] = None) -> User:
        self._require_service_role()
        email = email.strip().lower()
        if await self._auth._user_by_email(email):
            raise BackendError('A user with this email address has already been registered', status=422, code='email_exists')
        row = AuthUser(
            email=email,
            password_hash=pwd_context.hash(password),
            email_confirmed_at=now_utc() if email_confirm else None,
            user_metadata=json.dumps(user_metadata or {}),
        )
        async with self._auth._session() as s:
            s.add(row)
            await s.commit()
            await s.refresh(row)
        return _to_user(row)

    async def delete_user(self, user_id: str) -> None:
        self._require_service_role()
        async with self._auth._session() as s:
            row = await s.get(AuthUser, user_id)
            if row is None:
                raise BackendError('User not found', status=404, code='user_not_found')
            for model, column in ((AuthSession, AuthSession.user_id), (AuthCode, AuthCode.user_id)):
                q = await s.exec(select(model).where(column == user_id))
                for dep in q.all():
                    await s.delete(dep)
            await s.delete(row)
            await s.commit()


def create_backend(service_role: bool = False):
    """Construct the configured backend client.

    ``service_role=True`` builds an administrative client; it needs the
    service role key in either mode.
    """
    mode = config.BACKEND_MODE
    if mode == 'hosted':
        key = config.SERVICE_ROLE_KEY if service_role else config.BACKEND_ANON_KEY
        if not config.BACKEND_URL or not key:
            if service_role:
                raise ConfigError('Missing backend URL or service role key')
            raise ConfigError('Missing backend URL or anon key')
        from .hosted import HostedBackend
        return HostedBackend(config.BACKEND_URL, key, service_role=service_role)
    if mode != 'local':
        raise ConfigError(f'Unknown BACKEND_MODE {mode!r}')
    if service_role and not config.SERVICE_ROLE_KEY:
        raise ConfigError('Missing service role key')
    return LocalBackend(service_role=service_role)
