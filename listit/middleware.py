import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from fastapi.responses import RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from . import config
from .auth import (
    ACCESS_COOKIE,
    CSRF_COOKIE,
    LOGGED_IN_COOKIE,
    REFRESH_COOKIE,
    TOKEN_MIRROR_COOKIE,
    clear_auth_cookies,
    csrf_cookie_stale,
    get_backend,
    read_session,
    set_csrf_cookie,
    set_session_cookies,
)
from .utils import append_query

logger = logging.getLogger(__name__)

SKIP_PREFIXES = ('/static', '/api', '/_next', '/auth/callback', '/favicon.ico')
PROTECTED_PREFIXES = (
    '/dashboard', '/List', '/today', '/tomorrow', '/overdue', '/priority',
    '/completed', '/notcomplete', '/setting', '/profile',
    '/lists', '/collections', '/tasks', '/notes',
)
AUTH_ROUTES = ('/login', '/register', '/signup')


def _matches(path: str, prefixes) -> bool:
    return any(path == p or path.startswith(p + '/') for p in prefixes)


def is_skipped(path: str) -> bool:
    return _matches(path, SKIP_PREFIXES)


def is_protected(path: str) -> bool:
    return _matches(path, PROTECTED_PREFIXES)


def is_auth_route(path: str) -> bool:
    return path in AUTH_ROUTES


@dataclass
class Decision:
    # 'strip' | 'pass' | 'redirect' | 'continue'
    action: str
    location: Optional[str] = None


def decide(path: str, logout: bool, has_session: bool, referer_path: Optional[str]) -> Decision:
    """Route decision for one request, independent of the HTTP plumbing."""
    if logout and path == '/login':
        return Decision('strip')
    if is_skipped(path):
        return Decision('pass')
    if is_protected(path) and not has_session:
        return Decision('redirect', append_query('/login', redirectTo=path))
    if is_auth_route(path) and has_session and referer_path != path:
        return Decision('redirect', '/dashboard')
    return Decision('continue')


def _referer_path(request) -> Optional[str]:
    referer = request.headers.get('referer')
    if not referer:
        return None
    return urlsplit(referer).path or '/'


def _writes_cookie(response, name: str) -> bool:
    prefix = f'{name}='
    return any(v.startswith(prefix) for v in response.headers.getlist('set-cookie'))


def mirror_session_cookies(response, access_token: str):
    for name, value in ((TOKEN_MIRROR_COOKIE, access_token), (LOGGED_IN_COOKIE, 'true')):
        response.set_cookie(name, value, max_age=config.AUTH_COOKIE_MAX_AGE, path='/',
                            samesite='lax', httponly=False, secure=config.COOKIE_SECURE)


class RouteGuardMiddleware(BaseHTTPMiddleware):
    """Redirect by session presence and mirror the session into readable cookies.

    Signed-in responses also carry a fresh csrf cookie when the current one
    is missing or close to expiry.
    """

    async def dispatch(self, request, call_next):
        path = request.url.path
        logout = 'logout' in request.query_params

        if logout and path == '/login':
            # handlers must not restore the session that is being discarded
            request.state.auth_checked = True
            request.state.auth_session = None
            response = await call_next(request)
            clear_auth_cookies(response, request)
            return response
        if is_skipped(path):
            return await call_next(request)

        try:
            current = await read_session(get_backend(request), request)
        except Exception:
            logger.exception('session lookup failed for %s', path)
            if is_protected(path):
                response = RedirectResponse(url='/login', status_code=303)
            else:
                request.state.auth_checked = True
                request.state.auth_session = None
                response = await call_next(request)
            clear_auth_cookies(response, request)
            return response

        request.state.auth_checked = True
        request.state.auth_session = current
        decision = decide(path, logout, current is not None, _referer_path(request))
        if decision.action == 'redirect':
            logger.debug('route guard: %s -> %s', path, decision.location)
            response = RedirectResponse(url=decision.location, status_code=303)
            if current is not None and current.refreshed:
                set_session_cookies(response, current)
            return response

        response = await call_next(request)
        response.headers['x-auth-state'] = 'authenticated' if current else 'unauthenticated'
        # login/logout handlers write the session cookies themselves
        if _writes_cookie(response, ACCESS_COOKIE):
            return response
        if current is not None:
            if current.refreshed:
                set_session_cookies(response, current)
            mirror_session_cookies(response, current.access_token)
            if csrf_cookie_stale(request.cookies.get(CSRF_COOKIE), current.user.id):
                set_csrf_cookie(response, current.user.id)
        else:
            for name in (TOKEN_MIRROR_COOKIE, LOGGED_IN_COOKIE, ACCESS_COOKIE, REFRESH_COOKIE, CSRF_COOKIE):
                if name in request.cookies:
                    response.delete_cookie(name, path='/')
        return response
