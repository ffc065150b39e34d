import logging
import os
import sys
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

from . import config
from .account import delete_account, ensure_profile
from .auth import (
    AuthService,
    clear_auth_cookies,
    create_csrf_token,
    csrf_if_signed_in,
    get_auth,
    require_csrf,
    require_user,
)
from .backend import BackendError, ConfigError, create_backend
from .db import init_db
from .mutations import ListBoard, NoteBoard, TaskBoard
from .popups import (
    CollectionPopup,
    DeleteCollectionsPopup,
    EditCollectionPopup,
    EditListPopup,
    EditNotePopup,
    EditTaskPopup,
    ListPopup,
    NotePopup,
    TaskPopup,
    delete_list,
)
from .preferences import SidebarState, ThemeState, get_sidebar, get_theme, request_color_scheme_hint
from .middleware import RouteGuardMiddleware
from .utils import LIST_COLORS, append_query, parse_wait_seconds, safe_next_path, validate_password_strength
from .views import VIEW_TITLES, dashboard as load_dashboard, filtered_tasks, list_detail

logger = logging.getLogger(__name__)
# Console output when the host application configured no handlers.
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)

HERE = os.path.dirname(os.path.abspath(__file__))
RESET_COOLDOWN_COOKIE = 'reset_cooldown_until'
OAUTH_PROVIDERS = ('google', 'apple')


@asynccontextmanager
async def lifespan(app: FastAPI):
    if config.SECRET_KEY == "CHANGE_ME_IN_ENV_FOR_TESTS" and config.BACKEND_MODE == 'local' and not config.DEV_MODE:
        raise RuntimeError("SECRET_KEY not set or insecure fallback in use; set the SECRET_KEY environment variable before starting the server")
    if config.BACKEND_MODE == 'local':
        await init_db()
    logger.info('starting LIST IT with %s backend, site %s', config.BACKEND_MODE, config.SITE_URL)
    yield
    backend = getattr(app.state, 'backend', None)
    if backend is not None:
        await backend.aclose()


app = FastAPI(lifespan=lifespan)
app.add_middleware(RouteGuardMiddleware)
app.mount("/static", StaticFiles(directory=os.path.join(HERE, "static")), name="static")

TEMPLATES = Jinja2Templates(directory=os.path.join(HERE, "templates"))
TEMPLATES.env.globals['config'] = config
TEMPLATES.env.globals['list_colors'] = LIST_COLORS
TEMPLATES.env.globals['view_titles'] = VIEW_TITLES


def _wants_json(request: Request) -> bool:
    return 'application/json' in (request.headers.get('Accept') or '').lower()


def _redirect_or_json(request: Request, url: str, extra: dict | None = None, status: int = 303):
    """Return JSON when client asked for application/json, otherwise a RedirectResponse.

    JSON payload is {'ok': True, 'redirect': url, **extra}.
    """
    if _wants_json(request):
        payload = {'ok': True, 'redirect': url}
        if extra:
            payload.update(extra)
        return JSONResponse(payload)
    return RedirectResponse(url=url, status_code=status)


def _render(request: Request, name: str, context: dict | None = None,
            auth: Optional[AuthService] = None, status_code: int = 200):
    ctx = {
        'request': request,
        'user': auth.user if auth else None,
        'theme': ThemeState(request),
        'sidebar': SidebarState(request),
        'csrf_token': create_csrf_token(auth.user.id) if auth is not None and auth.is_logged_in else '',
    }
    if context:
        ctx.update(context)
    resp = TEMPLATES.TemplateResponse(request, name, ctx, status_code=status_code)
    request_color_scheme_hint(resp)
    if auth is not None:
        auth.commit(resp)
    return resp


def _form_error(request: Request, name: str, error: str, context: dict | None = None,
                auth: Optional[AuthService] = None, status_code: int = 400):
    """Inline validation/backend error: JSON for API clients, re-rendered form otherwise."""
    if _wants_json(request):
        resp = JSONResponse({'ok': False, 'error': error}, status_code=status_code)
        if auth is not None:
            auth.commit(resp)
        return resp
    ctx = dict(context or {})
    ctx['error'] = error
    return _render(request, name, ctx, auth, status_code=status_code)


def _back(request: Request, next_url: str | None, default: str) -> str:
    if next_url:
        return safe_next_path(next_url, default)
    return default


def _popup_response(request: Request, popup, row, back_url: str, extra_key: str = 'item'):
    if row is None:
        if _wants_json(request):
            return JSONResponse({'ok': False, 'error': popup.error}, status_code=400)
        return RedirectResponse(url=append_query(back_url, error=popup.error), status_code=303)
    extra = {extra_key: row}
    if popup.success_message:
        extra['message'] = popup.success_message
    return _redirect_or_json(request, back_url, extra)


def _mutation_response(request: Request, result, back_url: str):
    if not result.ok:
        if _wants_json(request):
            return JSONResponse({'ok': False, 'error': result.error}, status_code=400)
        return RedirectResponse(url=append_query(back_url, error=result.error), status_code=303)
    return _redirect_or_json(request, back_url, {'item': result.value})


async def _owned(db, table: str, row_id, user_id: str) -> dict:
    res = await db.table(table).select('*').eq('id', row_id).eq('user_id', user_id).execute()
    if not res.data:
        raise HTTPException(status_code=404, detail=f'{table} not found')
    return res.first


async def _list_collections(db, list_id, user_id: str) -> list:
    res = await db.table('collection').select('*').eq('list_id', list_id).eq('user_id', user_id).execute()
    return res.data


# --- public pages ---

@app.get("/", response_class=HTMLResponse)
@app.get("/landingpage", response_class=HTMLResponse)
async def landing(request: Request, auth: AuthService = Depends(get_auth)):
    return _render(request, 'landing.html', {}, auth)


@app.get("/aboutus", response_class=HTMLResponse)
async def about_us(request: Request, auth: AuthService = Depends(get_auth)):
    return _render(request, 'aboutus.html', {}, auth)


@app.get("/login", response_class=HTMLResponse)
async def login_get(request: Request, auth: AuthService = Depends(get_auth)):
    params = request.query_params
    message = None
    if 'logout' in params:
        message = 'You have been signed out.'
    elif params.get('reset') == 'success':
        message = 'Password updated successfully. Please sign in with your new password.'
    return _render(request, 'login.html', {
        'error': params.get('error'),
        'message': message,
        'redirect_to': params.get('redirectTo') or '',
    }, auth)


@app.post("/login")
async def login_post(request: Request, email: str = Form(''), password: str = Form(''),
                     redirectTo: str = Form(''), auth: AuthService = Depends(get_auth)):
    result = await auth.login(email.strip(), password)
    if not result.success:
        return _form_error(request, 'login.html', result.error, {'email': email, 'redirect_to': redirectTo}, auth)
    await ensure_profile(auth.db(), auth.user)
    resp = _redirect_or_json(request, safe_next_path(redirectTo), {'user': auth.user.model_dump()})
    return auth.commit(resp)


@app.get("/register", response_class=HTMLResponse)
async def register_get(request: Request, auth: AuthService = Depends(get_auth)):
    return _render(request, 'register.html', {}, auth)


@app.post("/register")
async def register_post(request: Request, full_name: str = Form(''), email: str = Form(''),
                        password: str = Form(''), confirm_password: str = Form(''),
                        auth: AuthService = Depends(get_auth)):
    ctx = {'email': email, 'full_name': full_name}
    if not full_name.strip():
        return _form_error(request, 'register.html', 'Full name is required', ctx, auth)
    if password != confirm_password:
        return _form_error(request, 'register.html', 'Passwords do not match', ctx, auth)
    result = await auth.register(email.strip(), password, full_name)
    if not result.success:
        return _form_error(request, 'register.html', result.error, ctx, auth)
    return _redirect_or_json(request, append_query('/verification', status='sent', email=email.strip()))


@app.get("/verification", response_class=HTMLResponse)
async def verification(request: Request, auth: AuthService = Depends(get_auth)):
    params = request.query_params
    token_hash = params.get('token_hash')
    if token_hash:
        kind = params.get('type') or 'signup'
        result = await auth.verify_email(token_hash, kind)
        if not result.success:
            return _render(request, 'verification.html', {'status': 'error', 'error': result.error}, auth,
                           status_code=400)
        await ensure_profile(auth.db(), auth.user)
        return auth.commit(RedirectResponse(url='/dashboard', status_code=303))
    return _render(request, 'verification.html', {
        'status': params.get('status'),
        'message': params.get('message'),
        'email': params.get('email'),
    }, auth)


def _cooldown_remaining(request: Request) -> int:
    raw = request.cookies.get(RESET_COOLDOWN_COOKIE)
    if not raw:
        return 0
    try:
        until = int(raw)
    except ValueError:
        return 0
    return max(0, until - int(time.time()))


def _set_cooldown(resp, seconds: int):
    resp.set_cookie(RESET_COOLDOWN_COOKIE, str(int(time.time()) + seconds), max_age=seconds,
                    path='/', samesite='lax', secure=config.COOKIE_SECURE)
    return resp


@app.get("/forgotPassword", response_class=HTMLResponse)
async def forgot_password_get(request: Request, auth: AuthService = Depends(get_auth)):
    return _render(request, 'forgot_password.html', {'cooldown': _cooldown_remaining(request)}, auth)


@app.post("/forgotPassword")
async def forgot_password_post(request: Request, email: str = Form(''), auth: AuthService = Depends(get_auth)):
    remaining = _cooldown_remaining(request)
    if remaining:
        return _form_error(request, 'forgot_password.html', f'Please wait {remaining}s before trying again.',
                           {'email': email, 'cooldown': remaining}, auth, status_code=429)
    result = await auth.reset_password(email.strip())
    if not result.success:
        wait = parse_wait_seconds(result.error)
        if wait:
            resp = _form_error(request, 'forgot_password.html', f'Please wait {wait}s before requesting again.',
                               {'email': email, 'cooldown': wait}, auth, status_code=429)
            return _set_cooldown(resp, wait)
        return _form_error(request, 'forgot_password.html', result.error, {'email': email}, auth)
    message = 'Password reset link sent! Check your email.'
    if _wants_json(request):
        resp = auth.commit(JSONResponse({'ok': True, 'message': message}))
    else:
        resp = _render(request, 'forgot_password.html', {
            'message': message, 'cooldown': config.RESET_COOLDOWN_SECONDS}, auth)
    return _set_cooldown(resp, config.RESET_COOLDOWN_SECONDS)


@app.get("/resetPassword", response_class=HTMLResponse)
async def reset_password_get(request: Request, auth: AuthService = Depends(get_auth)):
    code = request.query_params.get('code')
    if code:
        result = await auth.exchange_code(code, event='PASSWORD_RECOVERY')
        if not result.success:
            return _render(request, 'reset_password.html', {
                'error': 'Invalid or expired reset link. Please request a new one.',
                'details': result.error,
                'can_reset': False,
            }, auth, status_code=400)
    if not auth.is_logged_in:
        return _render(request, 'reset_password.html', {
            'error': 'Invalid or expired reset link. Please request a new one.',
            'can_reset': False,
        }, auth, status_code=400)
    return _render(request, 'reset_password.html', {'can_reset': True}, auth)


@app.post("/resetPassword")
async def reset_password_post(request: Request, password: str = Form(''), confirm_password: str = Form(''),
                              auth: AuthService = Depends(csrf_if_signed_in)):
    if not auth.is_logged_in:
        return _form_error(request, 'reset_password.html',
                           'Invalid or expired reset link. Please request a new one.', {'can_reset': False}, auth)
    weak = validate_password_strength(password)
    if weak:
        return _form_error(request, 'reset_password.html', weak, {'can_reset': True}, auth)
    if password != confirm_password:
        return _form_error(request, 'reset_password.html', 'Passwords do not match', {'can_reset': True}, auth)
    result = await auth.update_password(password)
    if not result.success:
        return _form_error(request, 'reset_password.html', result.error, {'can_reset': True}, auth)
    await auth.logout()
    return auth.commit(_redirect_or_json(request, '/login?reset=success'))


@app.post("/logout")
async def logout(request: Request, auth: AuthService = Depends(csrf_if_signed_in)):
    url = await auth.logout()
    return auth.commit(_redirect_or_json(request, url))


@app.post("/auth/oauth/{provider}")
async def oauth_start(request: Request, provider: str, auth: AuthService = Depends(get_auth)):
    if provider not in OAUTH_PROVIDERS:
        raise HTTPException(status_code=404, detail='unknown provider')
    try:
        if provider == 'google':
            url = await auth.login_with_google()
        else:
            url = await auth.login_with_apple()
    except BackendError as e:
        logger.warning('%s sign-in unavailable: %s', provider, e.message)
        return _form_error(request, 'login.html', e.message, {}, auth)
    return auth.commit(_redirect_or_json(request, url))


@app.get("/auth/callback")
async def auth_callback(request: Request, auth: AuthService = Depends(get_auth)):
    params = request.query_params
    error = params.get('error')
    if error:
        logger.error('auth callback error: %s', error)
        return RedirectResponse(url=append_query('/login', error=error), status_code=303)
    code = params.get('code')
    if not code:
        return RedirectResponse(url='/login?error=missing_code', status_code=303)
    result = await auth.exchange_code(code)
    if not result.success:
        logger.error('auth exchange error: %s', result.error)
        return auth.commit(RedirectResponse(url='/login?error=auth_callback_error', status_code=303))
    await ensure_profile(auth.db(), auth.user)
    return auth.commit(RedirectResponse(url=safe_next_path(params.get('next')), status_code=303))


# --- secure pages ---

@app.get("/dashboard", response_class=HTMLResponse)
async def dashboard_page(request: Request, auth: AuthService = Depends(require_user)):
    data = await load_dashboard(auth.db(), auth.user.id)
    return _render(request, 'dashboard.html', {**data, 'error': request.query_params.get('error')}, auth)


@app.get("/List", response_class=HTMLResponse)
async def lists_page(request: Request, auth: AuthService = Depends(require_user)):
    res = await auth.db().table('list').select('*').eq('user_id', auth.user.id).order('created_at').execute()
    lists = sorted(res.data, key=lambda r: not r.get('is_pinned'))
    return _render(request, 'lists.html', {'lists': lists, 'error': request.query_params.get('error')}, auth)


@app.get("/List/{list_id}", response_class=HTMLResponse)
async def list_page(request: Request, list_id: int, auth: AuthService = Depends(require_user)):
    detail = await list_detail(auth.db(), auth.user.id, list_id)
    if detail is None:
        raise HTTPException(status_code=404, detail='list not found')
    return _render(request, 'list_detail.html', {**detail, 'error': request.query_params.get('error')}, auth)


def _task_view_handler(view: str):
    async def handler(request: Request, auth: AuthService = Depends(require_user)):
        tasks = await filtered_tasks(auth.db(), auth.user.id, view)
        return _render(request, 'task_view.html', {
            'view': view,
            'title': VIEW_TITLES[view],
            'tasks': tasks,
            'error': request.query_params.get('error'),
        }, auth)
    handler.__name__ = f'{view}_page'
    return handler


for _view in VIEW_TITLES:
    app.add_api_route(f'/{_view}', _task_view_handler(_view), methods=['GET'], response_class=HTMLResponse)


async def _settings_context(auth: AuthService) -> dict:
    res = await auth.db().table('users').select('*').eq('id', auth.user.id).execute()
    return {'profile': res.first or {'full_name': auth.user.full_name, 'email': auth.user.email}}


@app.get("/setting", response_class=HTMLResponse)
async def setting_page(request: Request, auth: AuthService = Depends(require_user)):
    ctx = await _settings_context(auth)
    ctx['message'] = request.query_params.get('message')
    return _render(request, 'setting.html', ctx, auth)


@app.post("/setting/profile")
async def setting_profile(request: Request, full_name: str = Form(''), auth: AuthService = Depends(require_csrf)):
    name = full_name.strip()
    if not name:
        return _form_error(request, 'setting.html', 'Full name is required', await _settings_context(auth), auth)
    db = auth.db()
    try:
        await ensure_profile(db, auth.user)
        await db.table('users').update({'full_name': name}).eq('id', auth.user.id).execute()
    except BackendError as e:
        logger.error('profile update failed for %s: %s', auth.user.id, e.message)
        return _form_error(request, 'setting.html', e.message, await _settings_context(auth), auth)
    result = await auth.update_metadata({'full_name': name})
    if not result.success:
        return _form_error(request, 'setting.html', result.error, await _settings_context(auth), auth)
    return auth.commit(_redirect_or_json(request, append_query('/setting', message='Profile updated successfully')))


@app.post("/setting/password")
async def setting_password(request: Request, current_password: str = Form(''), new_password: str = Form(''),
                           confirm_password: str = Form(''), auth: AuthService = Depends(require_csrf)):
    if not current_password or not new_password:
        return _form_error(request, 'setting.html', 'All password fields are required', await _settings_context(auth), auth)
    if len(new_password) < 6:
        return _form_error(request, 'setting.html', 'Password must be at least 6 characters', await _settings_context(auth), auth)
    if new_password != confirm_password:
        return _form_error(request, 'setting.html', 'New passwords do not match', await _settings_context(auth), auth)
    try:
        check = await auth.backend.auth.sign_in_with_password(auth.user.email, current_password)
    except BackendError:
        return _form_error(request, 'setting.html', 'Current password is incorrect', await _settings_context(auth), auth)
    # the check created a second session; drop only that one
    try:
        await auth.backend.auth.sign_out(check.access_token, scope='local')
    except BackendError as e:
        logger.warning('could not end password-check session for %s: %s', auth.user.id, e.message)
    result = await auth.update_password(new_password)
    if not result.success:
        return _form_error(request, 'setting.html', result.error, await _settings_context(auth), auth)
    return auth.commit(_redirect_or_json(request, append_query('/setting', message='Password updated successfully')))


@app.post("/setting/delete")
async def setting_delete(request: Request, confirm: str = Form(''), auth: AuthService = Depends(require_csrf)):
    if confirm != 'DELETE':
        return _form_error(request, 'setting.html', 'Please type DELETE to confirm', await _settings_context(auth), auth)
    try:
        admin = create_backend(service_role=True)
    except ConfigError:
        logger.exception('account deletion is not configured')
        return _form_error(request, 'setting.html', 'Server configuration error', await _settings_context(auth), auth,
                           status_code=500)
    try:
        status, body = await delete_account(admin, auth.user.id)
    finally:
        await admin.aclose()
    if status != 200:
        return _form_error(request, 'setting.html', body.get('details') or body.get('error'),
                           await _settings_context(auth), auth, status_code=status)
    url = await auth.logout()
    return auth.commit(_redirect_or_json(request, url, {'message': body['message']}))


# --- list / collection / note / task forms ---

@app.post("/lists")
async def create_list(request: Request, list_name: str = Form(''), bg_color_hex: str = Form(''),
                      auth: AuthService = Depends(require_csrf)):
    popup = ListPopup(auth.db(), auth.user.id)
    row = await popup.submit(list_name=list_name, bg_color_hex=bg_color_hex)
    back = f"/List/{row['id']}" if row else '/dashboard'
    return _popup_response(request, popup, row, back)


@app.post("/lists/{list_id}/edit")
async def edit_list(request: Request, list_id: int, list_name: str = Form(''), bg_color_hex: str = Form(''),
                    next: str = Form(''), auth: AuthService = Depends(require_csrf)):
    db = auth.db()
    current = await _owned(db, 'list', list_id, auth.user.id)
    popup = EditListPopup(db, auth.user.id, current)
    row = await popup.submit(list_name=list_name, bg_color_hex=bg_color_hex)
    return _popup_response(request, popup, row, _back(request, next, f'/List/{list_id}'))


@app.post("/lists/{list_id}/pin")
async def pin_list(request: Request, list_id: int, next: str = Form(''), auth: AuthService = Depends(require_csrf)):
    db = auth.db()
    current = await _owned(db, 'list', list_id, auth.user.id)
    result = await ListBoard(db, [current]).toggle_pin(list_id)
    return _mutation_response(request, result, _back(request, next, '/dashboard'))


@app.post("/lists/{list_id}/delete")
async def remove_list(request: Request, list_id: int, auth: AuthService = Depends(require_csrf)):
    db = auth.db()
    await _owned(db, 'list', list_id, auth.user.id)
    try:
        await delete_list(db, auth.user.id, list_id)
    except BackendError as e:
        logger.error('deleting list %s failed: %s', list_id, e.message)
        if _wants_json(request):
            return JSONResponse({'ok': False, 'error': e.message}, status_code=400)
        return RedirectResponse(url=append_query(f'/List/{list_id}', error=e.message), status_code=303)
    return _redirect_or_json(request, '/dashboard', {'deleted': list_id})


@app.post("/collections")
async def create_collection(request: Request, list_id: int = Form(...), collection_name: str = Form(''),
                            bg_color_hex: str = Form(''), is_default: bool = Form(False),
                            auth: AuthService = Depends(require_csrf)):
    db = auth.db()
    await _owned(db, 'list', list_id, auth.user.id)
    popup = CollectionPopup(db, auth.user.id, list_id)
    row = await popup.submit(collection_name=collection_name, bg_color_hex=bg_color_hex, is_default=is_default)
    return _popup_response(request, popup, row, f'/List/{list_id}')


@app.post("/collections/delete")
async def delete_collections(request: Request, list_id: int = Form(...), collection_ids: list[int] = Form([]),
                             auth: AuthService = Depends(require_csrf)):
    db = auth.db()
    await _owned(db, 'list', list_id, auth.user.id)
    popup = DeleteCollectionsPopup(db, auth.user.id, await _list_collections(db, list_id, auth.user.id))
    row = await popup.submit(collection_ids=collection_ids)
    return _popup_response(request, popup, row, f'/List/{list_id}', extra_key='result')


@app.post("/collections/{collection_id}/edit")
async def edit_collection(request: Request, collection_id: int, collection_name: str = Form(''),
                          bg_color_hex: str = Form(''), auth: AuthService = Depends(require_csrf)):
    db = auth.db()
    current = await _owned(db, 'collection', collection_id, auth.user.id)
    popup = EditCollectionPopup(db, auth.user.id, current)
    row = await popup.submit(collection_name=collection_name, bg_color_hex=bg_color_hex)
    return _popup_response(request, popup, row, f"/List/{current['list_id']}")


@app.post("/notes")
async def create_note(request: Request, list_id: int = Form(...), title: str = Form(''), description: str = Form(''),
                      collection_id: Optional[int] = Form(None), bg_color_hex: str = Form(''),
                      auth: AuthService = Depends(require_csrf)):
    db = auth.db()
    await _owned(db, 'list', list_id, auth.user.id)
    collections = await _list_collections(db, list_id, auth.user.id)
    if collection_id is not None and collection_id not in {c['id'] for c in collections}:
        raise HTTPException(status_code=404, detail='collection not found')
    popup = NotePopup(db, auth.user.id, collections)
    row = await popup.submit(title=title, description=description, collection_id=collection_id,
                             bg_color_hex=bg_color_hex)
    return _popup_response(request, popup, row, f'/List/{list_id}')


async def _note_list_id(db, note: dict, user_id: str):
    res = await db.table('collection').select('list_id').eq('id', note['collection_id']).eq('user_id', user_id).execute()
    return res.first['list_id'] if res.data else None


@app.post("/notes/{note_id}/edit")
async def edit_note(request: Request, note_id: int, title: str = Form(''), description: str = Form(''),
                    bg_color_hex: str = Form(''), auth: AuthService = Depends(require_csrf)):
    db = auth.db()
    current = await _owned(db, 'note', note_id, auth.user.id)
    popup = EditNotePopup(db, auth.user.id, current)
    row = await popup.submit(title=title, description=description, bg_color_hex=bg_color_hex)
    list_id = await _note_list_id(db, current, auth.user.id)
    return _popup_response(request, popup, row, f'/List/{list_id}' if list_id else '/dashboard')


@app.post("/notes/{note_id}/pin")
async def pin_note(request: Request, note_id: int, next: str = Form(''), auth: AuthService = Depends(require_csrf)):
    db = auth.db()
    current = await _owned(db, 'note', note_id, auth.user.id)
    result = await NoteBoard(db, [current]).toggle_pin(note_id)
    list_id = await _note_list_id(db, current, auth.user.id)
    return _mutation_response(request, result, _back(request, next, f'/List/{list_id}' if list_id else '/dashboard'))


@app.post("/notes/{note_id}/delete")
async def delete_note(request: Request, note_id: int, auth: AuthService = Depends(require_csrf)):
    db = auth.db()
    current = await _owned(db, 'note', note_id, auth.user.id)
    list_id = await _note_list_id(db, current, auth.user.id)
    back = f'/List/{list_id}' if list_id else '/dashboard'
    try:
        await db.table('note').update({'is_deleted': True}).eq('id', note_id).eq('user_id', auth.user.id).execute()
    except BackendError as e:
        logger.error('deleting note %s failed: %s', note_id, e.message)
        if _wants_json(request):
            return JSONResponse({'ok': False, 'error': e.message}, status_code=400)
        return RedirectResponse(url=append_query(back, error=e.message), status_code=303)
    return _redirect_or_json(request, back, {'deleted': note_id})


@app.post("/tasks")
async def create_task(request: Request, list_id: int = Form(...), text: str = Form(''), description: str = Form(''),
                      due_date: str = Form(''), is_pinned: bool = Form(False),
                      collection_id: Optional[int] = Form(None), auth: AuthService = Depends(require_csrf)):
    db = auth.db()
    await _owned(db, 'list', list_id, auth.user.id)
    collections = await _list_collections(db, list_id, auth.user.id)
    if collection_id is not None and collection_id not in {c['id'] for c in collections}:
        raise HTTPException(status_code=404, detail='collection not found')
    popup = TaskPopup(db, auth.user.id, list_id, collections)
    row = await popup.submit(text=text, description=description, due_date=due_date, is_pinned=is_pinned,
                             collection_id=collection_id)
    return _popup_response(request, popup, row, f'/List/{list_id}')


@app.post("/tasks/{task_id}/edit")
async def edit_task(request: Request, task_id: int, text: str = Form(''), description: str = Form(''),
                    due_date: str = Form(''), is_pinned: bool = Form(False),
                    collection_id: Optional[int] = Form(None), next: str = Form(''),
                    auth: AuthService = Depends(require_csrf)):
    db = auth.db()
    current = await _owned(db, 'task', task_id, auth.user.id)
    if collection_id is not None:
        await _owned(db, 'collection', collection_id, auth.user.id)
    popup = EditTaskPopup(db, auth.user.id, current)
    row = await popup.submit(text=text, description=description, due_date=due_date, is_pinned=is_pinned,
                             collection_id=collection_id)
    return _popup_response(request, popup, row, _back(request, next, f"/List/{current['list_id']}"))


@app.post("/tasks/{task_id}/complete")
async def complete_task(request: Request, task_id: int, next: str = Form(''), auth: AuthService = Depends(require_csrf)):
    db = auth.db()
    current = await _owned(db, 'task', task_id, auth.user.id)
    result = await TaskBoard(db, [current]).toggle_completion(task_id)
    return _mutation_response(request, result, _back(request, next, f"/List/{current['list_id']}"))


@app.post("/tasks/{task_id}/priority")
async def prioritize_task(request: Request, task_id: int, next: str = Form(''), auth: AuthService = Depends(require_csrf)):
    db = auth.db()
    current = await _owned(db, 'task', task_id, auth.user.id)
    result = await TaskBoard(db, [current]).toggle_priority(task_id)
    return _mutation_response(request, result, _back(request, next, f"/List/{current['list_id']}"))


@app.post("/tasks/{task_id}/delete")
async def delete_task(request: Request, task_id: int, next: str = Form(''), auth: AuthService = Depends(require_csrf)):
    db = auth.db()
    current = await _owned(db, 'task', task_id, auth.user.id)
    result = await TaskBoard(db, [current]).soft_delete(task_id)
    return _mutation_response(request, result, _back(request, next, f"/List/{current['list_id']}"))


# --- preferences ---

@app.post("/preferences/theme")
async def toggle_theme(request: Request, next: str = Form(''), theme: ThemeState = Depends(get_theme)):
    theme.toggle()
    resp = _redirect_or_json(request, _back(request, next, '/'), {'theme': theme.theme})
    return theme.commit(resp)


@app.post("/preferences/sidebar/{action}")
async def sidebar_action(request: Request, action: str, next: str = Form(''),
                         sidebar: SidebarState = Depends(get_sidebar)):
    if action not in ('toggle', 'open', 'close'):
        raise HTTPException(status_code=404, detail='unknown sidebar action')
    getattr(sidebar, action)()
    resp = _redirect_or_json(request, _back(request, next, '/dashboard'), {'sidebar_open': sidebar.is_open})
    return sidebar.commit(resp)


# --- API ---

@app.delete("/api/delete-account")
async def api_delete_account(request: Request, auth: AuthService = Depends(get_auth)):
    # /api skips the route guard; a session refreshed by get_auth is written
    # back on every reply except a successful deletion
    def reply(payload: dict, status_code: int):
        return auth.commit(JSONResponse(payload, status_code=status_code))

    try:
        body = await request.json()
    except ValueError:
        body = {}
    user_id = body.get('userId') if isinstance(body, dict) else None
    if not user_id:
        return reply({'error': 'User ID is required'}, 400)
    try:
        admin = create_backend(service_role=True)
    except ConfigError:
        logger.error('delete-account called without service role credentials')
        return reply({'error': 'Server configuration error'}, 500)
    try:
        caller = auth.user
        if caller is None:
            bearer = request.headers.get('authorization') or ''
            if bearer.lower().startswith('bearer '):
                caller = await auth.backend.auth.get_user(bearer[7:].strip())
        if caller is None:
            return reply({'error': 'Not authenticated'}, 401)
        if caller.id != user_id:
            logger.warning('user %s attempted to delete account %s', caller.id, user_id)
            return reply({'error': 'Not allowed to delete this account'}, 403)
        status, payload = await delete_account(admin, user_id)
    except Exception as e:
        logger.exception('delete-account failed for %s', user_id)
        return reply({'error': 'Internal server error', 'details': str(e)}, 500)
    finally:
        await admin.aclose()
    if status != 200:
        return reply(payload, status)
    resp = JSONResponse(payload, status_code=status)
    clear_auth_cookies(resp, request)
    return resp
