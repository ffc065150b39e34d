"""HTTP client for the hosted backend-as-a-service.

Tables are reached through the PostgREST interface under ``/rest/v1`` and
accounts through the auth server under ``/auth/v1``. Requests carry the
project key as ``apikey``; table requests made on behalf of a signed-in user
also carry that user's access token so row-level security applies.
"""
import logging
from datetime import datetime
from typing import Optional
from urllib.parse import urlencode

import httpx

from . import config
from .backend import (
    AuthResponse,
    BackendError,
    OAuthRedirect,
    QueryBuilder,
    QueryResult,
    Session,
    User,
    check_single,
    generate_pkce_pair,
)

logger = logging.getLogger(__name__)

_METHODS = {'select': 'GET', 'insert': 'POST', 'update': 'PATCH', 'delete': 'DELETE'}


def _literal(value) -> str:
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _quoted(value) -> str:
    s = _literal(value)
    if any(ch in s for ch in ',()"'):
        return '"' + s.replace('"', '\\"') + '"'
    return s


def encode_filter(op: str, value) -> str:
    """Render one filter in PostgREST's ``op.value`` syntax."""
    if op == 'in':
        return 'in.(' + ','.join(_quoted(v) for v in value) + ')'
    return f'{op}.{_literal(value)}'


def _error_from_response(resp: httpx.Response) -> BackendError:
    message = None
    code = None
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get('message') or body.get('msg') or body.get('error_description') or body.get('error')
        code = body.get('code') or body.get('error_code') or body.get('error')
    if not message:
        message = (resp.text or '').strip()[:300] or f'HTTP {resp.status_code}: request failed'
    return BackendError(str(message), status=resp.status_code, code=str(code) if code is not None else None)


def _parse_user(data: dict) -> User:
    return User(
        id=data['id'],
        email=data.get('email') or '',
        user_metadata=data.get('user_metadata') or {},
        email_confirmed_at=data.get('email_confirmed_at') or data.get('confirmed_at'),
    )


def _parse_session(data: dict) -> Session:
    if not data.get('access_token') or not data.get('user'):
        raise BackendError('Auth response did not include a session', status=502, code='invalid_response')
    return Session(
        access_token=data['access_token'],
        refresh_token=data.get('refresh_token') or '',
        expires_in=int(data.get('expires_in') or 3600),
        expires_at=data.get('expires_at'),
        user=_parse_user(data['user']),
    )


class HostedBackend:
    def __init__(self, url: str, key: str, client: Optional[httpx.AsyncClient] = None,
                 access_token: Optional[str] = None, service_role: bool = False):
        self.url = url.rstrip('/')
        self.key = key
        self.service_role = service_role
        self.access_token = access_token
        self._client = client or httpx.AsyncClient(timeout=config.BACKEND_TIMEOUT)
        self.auth = HostedAuth(self)

    def table(self, name: str) -> QueryBuilder:
        return QueryBuilder(self, name)

    def with_access_token(self, access_token: Optional[str]) -> 'HostedBackend':
        if not access_token or access_token == self.access_token:
            return self
        return HostedBackend(self.url, self.key, client=self._client,
                             access_token=access_token, service_role=self.service_role)

    async def aclose(self):
        await self._client.aclose()

    def headers(self, access_token: Optional[str] = None) -> dict:
        return {
            'apikey': self.key,
            'Authorization': f'Bearer {access_token or self.access_token or self.key}',
        }

    async def request(self, method: str, path: str, *, access_token: Optional[str] = None,
                      headers: Optional[dict] = None, **kwargs) -> httpx.Response:
        all_headers = self.headers(access_token)
        if headers:
            all_headers.update(headers)
        try:
            resp = await self._client.request(method, f'{self.url}{path}', headers=all_headers, **kwargs)
        except httpx.HTTPError as e:
            logger.warning('backend request %s %s failed: %s', method, path, e)
            raise BackendError(f'Network error: {e}', status=503, code='network_error')
        if resp.status_code >= 400:
            raise _error_from_response(resp)
        return resp

    async def run_query(self, q: QueryBuilder) -> QueryResult:
        params = [('select', q.columns or '*')]
        for op, column, value in q.filters:
            params.append((column, encode_filter(op, value)))
        if q.action == 'select':
            if q.orders:
                params.append(('order', ','.join(f"{c}.{'desc' if d else 'asc'}" for c, d in q.orders)))
            if q.limit_count is not None:
                params.append(('limit', str(q.limit_count)))
        headers = {}
        if q.action != 'select':
            headers['Prefer'] = 'return=representation'
        kwargs = {}
        if q.action in ('insert', 'update'):
            kwargs['json'] = q.payload
        resp = await self.request(_METHODS[q.action], f'/rest/v1/{q.table}', params=params,
                                  headers=headers, **kwargs)
        data = resp.json() if resp.content else []
        if isinstance(data, dict):
            data = [data]
        check_single(q, data)
        return QueryResult(data)


class HostedAuth:
    def __init__(self, backend: HostedBackend):
        self._backend = backend
        self.admin = HostedAdmin(backend)

    async def _post(self, path: str, payload: dict, access_token: Optional[str] = None, **kwargs):
        resp = await self._backend.request('POST', f'/auth/v1{path}', json=payload,
                                           access_token=access_token, **kwargs)
        return resp.json() if resp.content else {}

    async def sign_up(self, email: str, password: str, data: Optional[dict] = None,
                      email_redirect_to: Optional[str] = None) -> AuthResponse:
        params = {'redirect_to': email_redirect_to} if email_redirect_to else None
        body = await self._post('/signup', {'email': email, 'password': password, 'data': data or {}},
                                params=params)
        if body.get('access_token'):
            session = _parse_session(body)
            return AuthResponse(user=session.user, session=session)
        user = body.get('user') or body
        return AuthResponse(user=_parse_user(user) if user.get('id') else None, session=None)

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        body = await self._post('/token', {'email': email.strip(), 'password': password},
                                params={'grant_type': 'password'})
        return _parse_session(body)

    async def sign_in_with_oauth(self, provider: str, redirect_to: Optional[str] = None) -> OAuthRedirect:
        verifier, challenge = generate_pkce_pair()
        query = {'provider': provider, 'code_challenge': challenge, 'code_challenge_method': 's256'}
        if redirect_to:
            query['redirect_to'] = redirect_to
        url = f'{self._backend.url}/auth/v1/authorize?{urlencode(query)}'
        return OAuthRedirect(provider=provider, url=url, code_verifier=verifier)

    async def get_user(self, access_token: Optional[str]) -> Optional[User]:
        if not access_token:
            return None
        try:
            resp = await self._backend.request('GET', '/auth/v1/user', access_token=access_token)
        except BackendError as e:
            if e.status in (401, 403):
                return None
            raise
        return _parse_user(resp.json())

    async def refresh_session(self, refresh_token: str) -> Session:
        body = await self._post('/token', {'refresh_token': refresh_token},
                                params={'grant_type': 'refresh_token'})
        return _parse_session(body)

    async def sign_out(self, access_token: Optional[str], scope: str = 'global') -> None:
        """Revoke sessions: 'global' ends all of the user's sessions, 'local' only this one."""
        if not access_token:
            return
        try:
            await self._backend.request('POST', '/auth/v1/logout', access_token=access_token,
                                        params={'scope': scope})
        except BackendError as e:
            # already expired or revoked
            if e.status not in (401, 403, 404):
                raise

    async def reset_password_for_email(self, email: str, redirect_to: Optional[str] = None,
                                       code_challenge: Optional[str] = None) -> None:
        payload = {'email': email}
        if code_challenge:
            payload['code_challenge'] = code_challenge
            payload['code_challenge_method'] = 's256'
        params = {'redirect_to': redirect_to} if redirect_to else None
        await self._post('/recover', payload, params=params)

    async def update_user(self, access_token: Optional[str], password: Optional[str] = None,
                          data: Optional[dict] = None) -> User:
        if not access_token:
            raise BackendError('Auth session missing!', status=401, code='session_not_found')
        payload = {}
        if password is not None:
            payload['password'] = password
        if data:
            payload['data'] = data
        resp = await self._backend.request('PUT', '/auth/v1/user', json=payload, access_token=access_token)
        return _parse_user(resp.json())

    async def verify_otp(self, token_hash: str, type: str) -> Session:
        body = await self._post('/verify', {'token_hash': token_hash, 'type': type})
        return _parse_session(body)

    async def exchange_code_for_session(self, code: str, code_verifier: Optional[str] = None) -> Session:
        body = await self._post('/token', {'auth_code': code, 'code_verifier': code_verifier},
                                params={'grant_type': 'pkce'})
        return _parse_session(body)


class HostedAdmin:
    """Admin endpoints; only usable with the service role key."""

    def __init__(self, backend: HostedBackend):
        self._backend = backend

    async def create_user(self, email: str, password: str, email_confirm: bool = False,
                          user_metadata: Optional[dict] = None) -> User:
        resp = await self._backend.request('POST', '/auth/v1/admin/users', access_token=self._backend.key, json={
            'email': email,
            'password': password,
            'email_confirm': email_confirm,
            'user_metadata': user_metadata or {},
        })
        return _parse_user(resp.json())

    async def delete_user(self, user_id: str) -> None:
        await self._backend.request('DELETE', f'/auth/v1/admin/users/{user_id}', access_token=self._backend.key)
