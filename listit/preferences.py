"""Theme and sidebar preferences, restored from cookies on every request."""
from fastapi import Request

from . import config

THEME_COOKIE = 'theme'
SIDEBAR_COOKIE = 'sidebar_open'
THEMES = ('light', 'dark')
PREFERENCE_MAX_AGE = 60 * 60 * 24 * 365
# browsers only send this hint after the server asks for it
COLOR_SCHEME_HINT = 'Sec-CH-Prefers-Color-Scheme'


class ThemeState:
    """Saved theme, else the OS colour scheme.

    Without a saved choice the server knows the OS preference only from the
    client hint; when that is missing too the page carries no theme class and
    the stylesheet's ``prefers-color-scheme`` rules decide.
    """

    def __init__(self, request: Request):
        saved = request.cookies.get(THEME_COOKIE)
        hint = request.headers.get(COLOR_SCHEME_HINT, '').strip('"').lower()
        self.explicit = saved in THEMES
        self.from_system = not self.explicit and hint in THEMES
        if self.explicit:
            self.theme = saved
        elif hint == 'dark':
            self.theme = 'dark'
        else:
            self.theme = 'light'
        self._dirty = False

    @property
    def document_class(self) -> str:
        if self.explicit or self.from_system:
            return self.theme
        return ''

    def toggle(self) -> str:
        self.theme = 'light' if self.theme == 'dark' else 'dark'
        self.explicit = True
        self._dirty = True
        return self.theme

    def commit(self, response):
        if self._dirty:
            response.set_cookie(THEME_COOKIE, self.theme, max_age=PREFERENCE_MAX_AGE, path='/',
                                samesite='lax', secure=config.COOKIE_SECURE)
        return response


def request_color_scheme_hint(response):
    """Ask the browser to send its colour scheme with later requests."""
    response.headers['Accept-CH'] = COLOR_SCHEME_HINT
    response.headers['Critical-CH'] = COLOR_SCHEME_HINT
    response.headers.append('Vary', COLOR_SCHEME_HINT)
    return response


class SidebarState:
    def __init__(self, request: Request):
        self.is_open = request.cookies.get(SIDEBAR_COOKIE) == 'true'
        self._dirty = False

    def _set(self, value: bool) -> bool:
        self.is_open = value
        self._dirty = True
        return value

    def toggle(self) -> bool:
        return self._set(not self.is_open)

    def open(self) -> bool:
        return self._set(True)

    def close(self) -> bool:
        return self._set(False)

    def commit(self, response):
        if self._dirty:
            response.set_cookie(SIDEBAR_COOKIE, 'true' if self.is_open else 'false',
                                max_age=PREFERENCE_MAX_AGE, path='/', samesite='lax',
                                secure=config.COOKIE_SECURE)
        return response


def get_theme(request: Request) -> ThemeState:
    return ThemeState(request)


def get_sidebar(request: Request) -> SidebarState:
    return SidebarState(request)
