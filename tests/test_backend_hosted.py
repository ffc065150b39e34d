import json
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from listit.backend import BackendError, pkce_challenge
from listit.hosted import HostedBackend, encode_filter

URL = 'https://project.example.co'

USER = {
    'id': '8d0c7f4e-0000-4000-8000-000000000001',
    'email': 'hosted@example.com',
    'user_metadata': {'full_name': 'Hosted User'},
    'email_confirmed_at': '2024-01-01T00:00:00Z',
}
SESSION = {
    'access_token': 'access-1',
    'refresh_token': 'refresh-1',
    'expires_in': 3600,
    'expires_at': 1700000000,
    'user': USER,
}


def make_backend(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HostedBackend(URL, 'anon-key', client=client, **kwargs)


def test_encode_filter():
    assert encode_filter('eq', 5) == 'eq.5'
    assert encode_filter('eq', True) == 'eq.true'
    assert encode_filter('is', None) == 'is.null'
    assert encode_filter('ilike', 'gro%') == 'ilike.gro%'
    assert encode_filter('in', [1, 2, 3]) == 'in.(1,2,3)'
    assert encode_filter('in', ['a,b', 'c']) == 'in.("a,b",c)'


@pytest.mark.asyncio
async def test_select_builds_rest_query():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(200, json=[{'id': 1, 'list_name': 'Groceries'}])

    backend = make_backend(handler)
    res = await (backend.table('list').select('id, list_name').eq('user_id', 'u1')
                 .order('created_at', desc=True).limit(5).execute())
    await backend.aclose()

    assert res.first == {'id': 1, 'list_name': 'Groceries'}
    req = seen[0]
    assert req.method == 'GET'
    assert req.url.path == '/rest/v1/list'
    params = req.url.params
    assert params['select'] == 'id, list_name'
    assert params['user_id'] == 'eq.u1'
    assert params['order'] == 'created_at.desc'
    assert params['limit'] == '5'
    assert req.headers['apikey'] == 'anon-key'
    assert req.headers['authorization'] == 'Bearer anon-key'


@pytest.mark.asyncio
async def test_writes_ask_for_representation():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        body = json.loads(request.content)
        return httpx.Response(201, json=[dict(body[0], id=7)])

    backend = make_backend(handler)
    user_db = backend.with_access_token('user-token')
    res = await user_db.table('task').insert({'text': 'Buy milk', 'user_id': 'u1'}).execute()
    await backend.aclose()

    assert res.first['id'] == 7
    req = seen[0]
    assert req.method == 'POST'
    assert req.headers['prefer'] == 'return=representation'
    assert req.headers['authorization'] == 'Bearer user-token'
    assert req.headers['apikey'] == 'anon-key'


@pytest.mark.asyncio
async def test_update_uses_patch_with_filters():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(200, json=[{'id': 3, 'is_pinned': True}])

    backend = make_backend(handler)
    await backend.table('task').update({'is_pinned': True}).eq('id', 3).eq('user_id', 'u1').execute()
    await backend.aclose()

    req = seen[0]
    assert req.method == 'PATCH'
    assert req.url.params.get_list('id') == ['eq.3']
    assert json.loads(req.content) == {'is_pinned': True}


@pytest.mark.asyncio
async def test_error_body_becomes_backend_error():
    def handler(request: httpx.Request):
        return httpx.Response(409, json={'code': '23505', 'message': 'duplicate key value violates unique constraint'})

    backend = make_backend(handler)
    with pytest.raises(BackendError) as exc:
        await backend.table('list').insert({'list_name': 'x'}).execute()
    await backend.aclose()
    assert exc.value.status == 409
    assert exc.value.code == '23505'
    assert 'duplicate key' in exc.value.message


@pytest.mark.asyncio
async def test_network_failure_is_backend_error():
    def handler(request: httpx.Request):
        raise httpx.ConnectError('connection refused', request=request)

    backend = make_backend(handler)
    with pytest.raises(BackendError) as exc:
        await backend.table('list').select('*').execute()
    await backend.aclose()
    assert exc.value.status == 503
    assert exc.value.code == 'network_error'


@pytest.mark.asyncio
async def test_single_with_many_rows():
    def handler(request: httpx.Request):
        return httpx.Response(200, json=[{'id': 1}, {'id': 2}])

    backend = make_backend(handler)
    with pytest.raises(BackendError) as exc:
        await backend.table('users').select('id').single().execute()
    await backend.aclose()
    assert exc.value.code == 'PGRST116'


@pytest.mark.asyncio
async def test_password_sign_in_and_refresh():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(200, json=SESSION)

    backend = make_backend(handler)
    session = await backend.auth.sign_in_with_password(' hosted@example.com ', 'pw')
    await backend.auth.refresh_session('refresh-1')
    await backend.aclose()

    assert session.access_token == 'access-1'
    assert session.user.full_name == 'Hosted User'
    assert seen[0].url.path == '/auth/v1/token'
    assert seen[0].url.params['grant_type'] == 'password'
    assert json.loads(seen[0].content) == {'email': 'hosted@example.com', 'password': 'pw'}
    assert seen[1].url.params['grant_type'] == 'refresh_token'


@pytest.mark.asyncio
async def test_sign_in_error_message():
    def handler(request: httpx.Request):
        return httpx.Response(400, json={'error': 'invalid_grant', 'error_description': 'Invalid login credentials'})

    backend = make_backend(handler)
    with pytest.raises(BackendError) as exc:
        await backend.auth.sign_in_with_password('a@example.com', 'bad')
    await backend.aclose()
    assert exc.value.message == 'Invalid login credentials'


@pytest.mark.asyncio
async def test_get_user_rejected_token_is_none():
    def handler(request: httpx.Request):
        if request.headers['authorization'] == 'Bearer good':
            return httpx.Response(200, json=USER)
        return httpx.Response(401, json={'msg': 'invalid JWT'})

    backend = make_backend(handler)
    assert (await backend.auth.get_user('good')).email == 'hosted@example.com'
    assert await backend.auth.get_user('expired') is None
    assert await backend.auth.get_user(None) is None
    await backend.aclose()


@pytest.mark.asyncio
async def test_sign_out_ignores_revoked_session():
    def handler(request: httpx.Request):
        assert request.url.params['scope'] == 'global'
        return httpx.Response(401, json={'msg': 'session not found'})

    backend = make_backend(handler)
    await backend.auth.sign_out('stale')
    await backend.aclose()


@pytest.mark.asyncio
async def test_oauth_url_carries_pkce_challenge():
    backend = make_backend(lambda request: httpx.Response(500))
    redirect = await backend.auth.sign_in_with_oauth('google', redirect_to='http://test/auth/callback')
    await backend.aclose()

    parts = urlsplit(redirect.url)
    query = {k: v[0] for k, v in parse_qs(parts.query).items()}
    assert parts.path == '/auth/v1/authorize'
    assert query['provider'] == 'google'
    assert query['redirect_to'] == 'http://test/auth/callback'
    assert query['code_challenge'] == pkce_challenge(redirect.code_verifier)


@pytest.mark.asyncio
async def test_recover_and_exchange_code():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        if request.url.path == '/auth/v1/recover':
            return httpx.Response(200, json={})
        return httpx.Response(200, json=SESSION)

    backend = make_backend(handler)
    await backend.auth.reset_password_for_email('hosted@example.com', redirect_to='http://test/resetPassword',
                                                code_challenge='abc')
    session = await backend.auth.exchange_code_for_session('the-code', 'the-verifier')
    await backend.aclose()

    recover = json.loads(seen[0].content)
    assert recover['code_challenge'] == 'abc'
    assert recover['code_challenge_method'] == 's256'
    assert seen[0].url.params['redirect_to'] == 'http://test/resetPassword'
    assert seen[1].url.params['grant_type'] == 'pkce'
    assert json.loads(seen[1].content) == {'auth_code': 'the-code', 'code_verifier': 'the-verifier'}
    assert session.refresh_token == 'refresh-1'


@pytest.mark.asyncio
async def test_admin_delete_uses_service_key():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(200, json={})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    admin = HostedBackend(URL, 'service-key', client=client, service_role=True)
    await admin.auth.admin.delete_user('user-1')
    await admin.aclose()

    assert seen[0].method == 'DELETE'
    assert seen[0].url.path == '/auth/v1/admin/users/user-1'
    assert seen[0].headers['authorization'] == 'Bearer service-key'


@pytest.mark.asyncio
async def test_sign_out_can_end_only_the_current_session():
    seen = []

    def handler(request: httpx.Request):
        seen.append((request.url.path, request.url.params['scope'], request.headers['authorization']))
        return httpx.Response(204)

    backend = make_backend(handler)
    await backend.auth.sign_out('check-session-token', scope='local')
    await backend.auth.sign_out('browser-token')
    assert seen == [
        ('/auth/v1/logout', 'local', 'Bearer check-session-token'),
        ('/auth/v1/logout', 'global', 'Bearer browser-token'),
    ]
    await backend.aclose()
