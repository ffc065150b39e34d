"""Per-request auth context.

``AuthService`` is created for each request by the ``get_auth`` dependency.
It restores the session from cookies once (``bootstrap``), notifies
subscribers of auth state changes, and queues the cookie writes that the
route handler applies to its response with ``auth.commit(response)``.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt

from . import config
from .backend import ALGORITHM, BackendError, Session, User, create_backend, generate_pkce_pair
from .utils import is_valid_email, validate_password_strength

logger = logging.getLogger(__name__)

ACCESS_COOKIE = 'sb-access-token'
REFRESH_COOKIE = 'sb-refresh-token'
# readable mirrors maintained by the route middleware
TOKEN_MIRROR_COOKIE = 'auth_token'
LOGGED_IN_COOKIE = 'isLoggedIn'
VERIFIER_COOKIE = 'listit-code-verifier'
SIGNED_OUT_COOKIE = 'listit-signed-out'
CSRF_COOKIE = 'csrf_token'
CSRF_FIELD = '_csrf'
CSRF_HEADER = 'x-csrf-token'
# reissue the csrf cookie when it has less than this left
CSRF_REFRESH_SECONDS = 300

AUTH_COOKIE_NAMES = (ACCESS_COOKIE, REFRESH_COOKIE, TOKEN_MIRROR_COOKIE, LOGGED_IN_COOKIE, VERIFIER_COOKIE, CSRF_COOKIE)
AUTH_COOKIE_MARKERS = ('auth', 'session', 'token', 'sb-', 'supabase', 'isloggedin')

LOGOUT_REDIRECT = '/login?logout=true'
VERIFIER_MAX_AGE = 60 * 10

EVENTS = ('INITIAL_SESSION', 'SIGNED_IN', 'SIGNED_OUT', 'TOKEN_REFRESHED', 'PASSWORD_RECOVERY', 'USER_UPDATED')


@dataclass
class AuthResult:
    success: bool
    error: Optional[str] = None


@dataclass
class CurrentSession:
    access_token: str
    refresh_token: Optional[str]
    user: User
    refreshed: bool = False

    @classmethod
    def from_session(cls, session: Session, refreshed: bool = False) -> 'CurrentSession':
        return cls(session.access_token, session.refresh_token, session.user, refreshed)


def get_backend(request: Request):
    """Return the app-wide backend client, creating it on first use."""
    backend = getattr(request.app.state, 'backend', None)
    if backend is None:
        backend = create_backend()
        request.app.state.backend = backend
    return backend


async def read_session(backend, request: Request) -> Optional[CurrentSession]:
    """Restore the session from the request cookies.

    A rejected access token falls back to the refresh token; the returned
    session then has ``refreshed=True`` and its new tokens must be written
    back to the client.
    """
    access = request.cookies.get(ACCESS_COOKIE)
    refresh = request.cookies.get(REFRESH_COOKIE)
    if access:
        user = await backend.auth.get_user(access)
        if user is not None:
            return CurrentSession(access, refresh, user)
    if refresh:
        try:
            session = await backend.auth.refresh_session(refresh)
        except BackendError as e:
            logger.info('session refresh rejected: %s', e.message)
            return None
        return CurrentSession.from_session(session, refreshed=True)
    return None


def set_session_cookies(response, session: CurrentSession) -> None:
    response.set_cookie(ACCESS_COOKIE, session.access_token, httponly=True, samesite='lax',
                        secure=config.COOKIE_SECURE, max_age=config.AUTH_COOKIE_MAX_AGE, path='/')
    if session.refresh_token:
        response.set_cookie(REFRESH_COOKIE, session.refresh_token, httponly=True, samesite='lax',
                            secure=config.COOKIE_SECURE, max_age=config.AUTH_COOKIE_MAX_AGE, path='/')


def create_csrf_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(seconds=config.CSRF_TOKEN_EXPIRE_SECONDS))
    claims = {'sub': user_id, 'type': 'csrf', 'exp': int(expire.timestamp())}
    return jwt.encode(claims, config.SECRET_KEY, algorithm=ALGORITHM)


def _csrf_claims(token: Optional[str], user_id: str) -> Optional[dict]:
    if not token:
        return None
    try:
        claims = jwt.decode(token, config.SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.info('csrf token rejected: %s', e)
        return None
    if claims.get('type') != 'csrf' or claims.get('sub') != user_id:
        logger.info('csrf token rejected: not issued for this user')
        return None
    return claims


def verify_csrf_token(token: Optional[str], user_id: str) -> bool:
    return _csrf_claims(token, user_id) is not None


def csrf_cookie_stale(token: Optional[str], user_id: str) -> bool:
    """True when the csrf cookie is missing, invalid for ``user_id`` or about to expire."""
    claims = _csrf_claims(token, user_id)
    if claims is None:
        return True
    return claims['exp'] - datetime.now(timezone.utc).timestamp() < CSRF_REFRESH_SECONDS


def set_csrf_cookie(response, user_id: str) -> None:
    # readable so scripts can echo it in the x-csrf-token header
    response.set_cookie(CSRF_COOKIE, create_csrf_token(user_id), httponly=False, samesite='lax',
                        secure=config.COOKIE_SECURE, max_age=config.CSRF_TOKEN_EXPIRE_SECONDS, path='/')


def auth_cookie_names(request: Optional[Request] = None) -> list[str]:
    """Named auth cookies plus any request cookie that looks auth-related."""
    names = set(AUTH_COOKIE_NAMES)
    if request is not None:
        for name in request.cookies:
            lowered = name.lower()
            if any(marker in lowered for marker in AUTH_COOKIE_MARKERS):
                names.add(name)
    return sorted(names)


def clear_auth_cookies(response, request: Optional[Request] = None) -> None:
    for name in auth_cookie_names(request):
        response.delete_cookie(name, path='/')


class Subscription:
    def __init__(self, listeners: list, callback):
        self._listeners = listeners
        self.callback = callback

    def unsubscribe(self):
        if self.callback in self._listeners:
            self._listeners.remove(self.callback)


class AuthService:
    def __init__(self, backend, request: Request):
        self.backend = backend
        self.request = request
        self.session: Optional[CurrentSession] = None
        self.loading = True
        self._listeners: list[Callable] = []
        self._cookie_ops: list[Callable] = []

    @property
    def user(self) -> Optional[User]:
        return self.session.user if self.session else None

    @property
    def is_logged_in(self) -> bool:
        return self.session is not None

    @property
    def access_token(self) -> Optional[str]:
        return self.session.access_token if self.session else None

    def db(self):
        """Backend client acting as the signed-in user."""
        return self.backend.with_access_token(self.access_token)

    def on_auth_state_change(self, callback: Callable[[str, Optional[CurrentSession]], None]) -> Subscription:
        self._listeners.append(callback)
        return Subscription(self._listeners, callback)

    def _emit(self, event: str):
        for cb in list(self._listeners):
            try:
                cb(event, self.session)
            except Exception:
                logger.exception('auth listener failed for %s', event)

    def _set_cookie(self, name: str, value: str, max_age: Optional[int] = None, httponly: bool = True):
        self._cookie_ops.append(lambda resp: resp.set_cookie(
            name, value, httponly=httponly, samesite='lax', secure=config.COOKIE_SECURE,
            max_age=max_age, path='/'))

    def _delete_cookie(self, name: str):
        self._cookie_ops.append(lambda resp: resp.delete_cookie(name, path='/'))

    def _set_session(self, session: Session, event: str):
        self.session = CurrentSession.from_session(session)
        current = self.session
        self._cookie_ops.append(lambda resp: set_session_cookies(resp, current))
        self._cookie_ops.append(lambda resp: set_csrf_cookie(resp, current.user.id))
        if SIGNED_OUT_COOKIE in self.request.cookies:
            self._delete_cookie(SIGNED_OUT_COOKIE)
        self._emit(event)

    def commit(self, response):
        """Apply queued cookie writes to ``response`` and return it."""
        for op in self._cookie_ops:
            op(response)
        self._cookie_ops.clear()
        return response

    def close(self):
        self._listeners.clear()

    async def bootstrap(self):
        # the route middleware may already have restored (and refreshed) it
        cached = getattr(self.request.state, 'auth_session', None)
        if cached is not None or getattr(self.request.state, 'auth_checked', False):
            self.session = cached
        else:
            try:
                self.session = await read_session(self.backend, self.request)
            except BackendError:
                logger.exception('could not restore session')
                self.session = None
            if self.session is not None and self.session.refreshed:
                current = self.session
                self._cookie_ops.append(lambda resp: set_session_cookies(resp, current))
                self._emit('TOKEN_REFRESHED')
        self.loading = False
        self._emit('INITIAL_SESSION')
        return self.session

    async def login(self, email: str, password: str) -> AuthResult:
        if not email or not password:
            return AuthResult(False, 'Email and password are required')
        try:
            session = await self.backend.auth.sign_in_with_password(email, password)
        except BackendError as e:
            logger.warning('login failed for %s: %s', email, e.message)
            return AuthResult(False, e.message)
        self._set_session(session, 'SIGNED_IN')
        return AuthResult(True)

    async def _login_with_oauth(self, provider: str) -> str:
        redirect = await self.backend.auth.sign_in_with_oauth(
            provider, redirect_to=f'{config.SITE_URL}/auth/callback')
        if redirect.code_verifier:
            self._set_cookie(VERIFIER_COOKIE, redirect.code_verifier, max_age=VERIFIER_MAX_AGE)
        return redirect.url

    async def login_with_google(self) -> str:
        return await self._login_with_oauth('google')

    async def login_with_apple(self) -> str:
        return await self._login_with_oauth('apple')

    async def logout(self) -> str:
        """Sign out and return the URL to send the browser to.

        Local state and cookies are cleared whether or not the backend
        accepts the sign-out.
        """
        token = self.access_token
        self.session = None
        self._emit('SIGNED_OUT')
        try:
            await self.backend.auth.sign_out(token)
        except Exception:
            logger.exception('backend sign-out failed, clearing local session anyway')
        finally:
            request = self.request
            self._cookie_ops.append(lambda resp: clear_auth_cookies(resp, request))
            self._set_cookie(SIGNED_OUT_COOKIE, 'true', httponly=False)
        return LOGOUT_REDIRECT

    async def reset_password(self, email: str) -> AuthResult:
        if not is_valid_email(email or ''):
            return AuthResult(False, 'Please enter a valid email address')
        verifier, challenge = generate_pkce_pair()
        try:
            await self.backend.auth.reset_password_for_email(
                email, redirect_to=f'{config.SITE_URL}/resetPassword', code_challenge=challenge)
        except BackendError as e:
            logger.warning('password reset request failed for %s: %s', email, e.message)
            return AuthResult(False, e.message)
        self._set_cookie(VERIFIER_COOKIE, verifier, max_age=60 * 60)
        return AuthResult(True)

    async def register(self, email: str, password: str, full_name: str = '') -> AuthResult:
        if not is_valid_email(email or ''):
            return AuthResult(False, 'Please enter a valid email address')
        weak = validate_password_strength(password or '')
        if weak:
            return AuthResult(False, weak)
        try:
            await self.backend.auth.sign_up(
                email, password, data={'full_name': full_name.strip()},
                email_redirect_to=f'{config.SITE_URL}/verification')
        except BackendError as e:
            logger.warning('sign-up failed for %s: %s', email, e.message)
            return AuthResult(False, e.message)
        return AuthResult(True)

    async def update_password(self, password: str) -> AuthResult:
        if not self.is_logged_in:
            return AuthResult(False, 'Auth session missing!')
        try:
            user = await self.backend.auth.update_user(self.access_token, password=password)
        except BackendError as e:
            logger.warning('password update failed: %s', e.message)
            return AuthResult(False, e.message)
        self.session.user = user
        self._emit('USER_UPDATED')
        return AuthResult(True)

    async def update_metadata(self, data: dict) -> AuthResult:
        if not self.is_logged_in:
            return AuthResult(False, 'Auth session missing!')
        try:
            user = await self.backend.auth.update_user(self.access_token, data=data)
        except BackendError as e:
            logger.warning('profile update failed: %s', e.message)
            return AuthResult(False, e.message)
        self.session.user = user
        self._emit('USER_UPDATED')
        return AuthResult(True)

    async def verify_email(self, token_hash: str, type: str = 'signup') -> AuthResult:
        try:
            session = await self.backend.auth.verify_otp(token_hash, type)
        except BackendError as e:
            logger.warning('verification failed: %s', e.message)
            return AuthResult(False, e.message)
        self._set_session(session, 'PASSWORD_RECOVERY' if type == 'recovery' else 'SIGNED_IN')
        return AuthResult(True)

    async def exchange_code(self, code: str, event: str = 'SIGNED_IN') -> AuthResult:
        verifier = self.request.cookies.get(VERIFIER_COOKIE)
        try:
            session = await self.backend.auth.exchange_code_for_session(code, verifier)
        except BackendError as e:
            logger.warning('code exchange failed: %s', e.message)
            return AuthResult(False, e.message)
        if verifier:
            self._delete_cookie(VERIFIER_COOKIE)
        self._set_session(session, event)
        return AuthResult(True)


async def get_auth(request: Request, backend=Depends(get_backend)):
    auth = AuthService(backend, request)
    await auth.bootstrap()
    try:
        yield auth
    finally:
        auth.close()


async def require_user(auth: AuthService = Depends(get_auth)) -> AuthService:
    if not auth.is_logged_in:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    return auth


async def check_csrf(request: Request, auth: AuthService) -> None:
    """Reject a signed-in write unless it carries this user's csrf token.

    Browsers send it as the ``_csrf`` form field, scripts as the
    ``x-csrf-token`` header. The cookie alone is not accepted.
    """
    if not auth.is_logged_in:
        return
    token = request.headers.get(CSRF_HEADER)
    if not token:
        form = await request.form()
        token = form.get(CSRF_FIELD)
    if not isinstance(token, str) or not verify_csrf_token(token, auth.user.id):
        logger.warning('csrf check failed for %s %s (user %s)', request.method, request.url.path, auth.user.id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='invalid csrf token')


async def require_csrf(request: Request, auth: AuthService = Depends(require_user)) -> AuthService:
    await check_csrf(request, auth)
    return auth


async def csrf_if_signed_in(request: Request, auth: AuthService = Depends(get_auth)) -> AuthService:
    await check_csrf(request, auth)
    return auth
