import pytest
from bs4 import BeautifulSoup
from starlette.requests import Request
from starlette.responses import Response

from listit.preferences import SidebarState, ThemeState


def make_request(headers=None):
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({'type': 'http', 'method': 'GET', 'path': '/', 'headers': raw, 'query_string': b''})


def test_theme_defaults_and_saved_value():
    assert ThemeState(make_request()).theme == 'light'
    assert ThemeState(make_request({'sec-ch-prefers-color-scheme': 'dark'})).theme == 'dark'
    saved = ThemeState(make_request({'cookie': 'theme=light', 'sec-ch-prefers-color-scheme': 'dark'}))
    assert saved.theme == 'light'
    # unknown values fall back
    assert ThemeState(make_request({'cookie': 'theme=purple'})).theme == 'light'


def test_theme_toggle_writes_cookie_only_when_changed():
    theme = ThemeState(make_request())
    resp = theme.commit(Response())
    assert resp.headers.getlist('set-cookie') == []
    assert theme.toggle() == 'dark'
    assert theme.document_class == 'dark'
    resp = theme.commit(Response())
    assert resp.headers.getlist('set-cookie')[0].startswith('theme=dark')


def test_sidebar_state():
    sidebar = SidebarState(make_request({'cookie': 'sidebar_open=true'}))
    assert sidebar.is_open
    assert sidebar.toggle() is False
    assert sidebar.open() is True
    assert sidebar.close() is False
    resp = sidebar.commit(Response())
    assert resp.headers.getlist('set-cookie')[0].startswith('sidebar_open=false')
    assert not SidebarState(make_request()).is_open


@pytest.mark.asyncio
async def test_theme_toggle_endpoint(client):
    r = await client.post('/preferences/theme', data={'next': '/aboutus'})
    assert r.status_code == 303
    assert r.headers['location'] == '/aboutus'
    assert client.cookies.get('theme') == 'dark'

    r = await client.get('/aboutus')
    soup = BeautifulSoup(r.text, 'html.parser')
    assert 'dark' in soup.html.get('class', [])
    assert soup.select_one('#theme-toggle').text.strip() == 'Light mode'

    r = await client.post('/preferences/theme', headers={'Accept': 'application/json'})
    assert r.json() == {'ok': True, 'redirect': '/', 'theme': 'light'}


@pytest.mark.asyncio
async def test_sidebar_endpoint(auth_client):
    r = await auth_client.post('/preferences/sidebar/open', data={'next': '/dashboard'})
    assert r.status_code == 303
    assert auth_client.cookies.get('sidebar_open') == 'true'
    r = await auth_client.get('/dashboard')
    soup = BeautifulSoup(r.text, 'html.parser')
    links = [a['href'] for a in soup.select('#sidebar a')]
    assert '/today' in links and '/notcomplete' in links

    r = await auth_client.post('/preferences/sidebar/toggle', headers={'Accept': 'application/json'})
    assert r.json()['sidebar_open'] is False
    r = await auth_client.post('/preferences/sidebar/explode')
    assert r.status_code == 404


def test_theme_follows_system_without_saved_choice():
    unknown = ThemeState(make_request())
    # no class lets the stylesheet's prefers-color-scheme rules apply
    assert unknown.document_class == ''
    hinted = ThemeState(make_request({'Sec-CH-Prefers-Color-Scheme': '"dark"'}))
    assert hinted.theme == 'dark'
    assert hinted.document_class == 'dark'
    saved = ThemeState(make_request({'cookie': 'theme=light'}))
    assert saved.document_class == 'light'


@pytest.mark.asyncio
async def test_pages_ask_for_color_scheme_hint(client):
    r = await client.get('/')
    assert r.headers['accept-ch'] == 'Sec-CH-Prefers-Color-Scheme'
    assert r.headers['critical-ch'] == 'Sec-CH-Prefers-Color-Scheme'
    assert 'Sec-CH-Prefers-Color-Scheme' in r.headers['vary']
    classes = BeautifulSoup(r.text, 'html.parser').html.get('class') or []
    assert 'dark' not in classes and 'light' not in classes

    r = await client.get('/', headers={'Sec-CH-Prefers-Color-Scheme': 'dark'})
    assert 'dark' in BeautifulSoup(r.text, 'html.parser').html.get('class', [])

    css = (await client.get('/static/style.css')).text
    assert '@media (prefers-color-scheme: dark)' in css
