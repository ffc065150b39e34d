"""Runtime configuration for LIST IT.

Values are read from environment variables at import time. Call sites read
them as ``config.NAME`` so tests can monkeypatch individual values.
"""
import os


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


# Which backend client to construct: 'hosted' talks to the backend-as-a-service
# over HTTP, 'local' serves the same interface from a SQLite database (dev and
# tests).
BACKEND_MODE = os.getenv('BACKEND_MODE', 'local').lower()

# Hosted backend coordinates. The anon key is safe to expose to browsers; the
# service role key must only ever be used server-side (account deletion).
BACKEND_URL = os.getenv('BACKEND_URL', '')
BACKEND_ANON_KEY = os.getenv('BACKEND_ANON_KEY', '')
SERVICE_ROLE_KEY = os.getenv('SERVICE_ROLE_KEY', '')

# Public origin used to build redirect URLs (OAuth callback, password reset,
# e-mail verification).
SITE_URL = os.getenv('SITE_URL', 'http://localhost:8000').rstrip('/')

# Local backend: database and token signing key.
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite+aiosqlite:///./listit.db')
SECRET_KEY = os.getenv('SECRET_KEY', 'CHANGE_ME_IN_ENV_FOR_TESTS')
ACCESS_TOKEN_EXPIRE_SECONDS = int(os.getenv('ACCESS_TOKEN_EXPIRE_SECONDS', str(60 * 60)))
# Signed-in form posts carry a token bound to the user; the readable
# csrf_token cookie holding it is reissued before it expires.
CSRF_TOKEN_EXPIRE_SECONDS = int(os.getenv('CSRF_TOKEN_EXPIRE_SECONDS', str(60 * 60 * 8)))


# Cookies mirrored by the route middleware live for one week.
AUTH_COOKIE_MAX_AGE = 60 * 60 * 24 * 7
COOKIE_SECURE = _trueish(os.getenv('COOKIE_SECURE', '0'))

# Minimum spacing between password-reset e-mails for one address. The local
# backend enforces it the way the hosted service does; the forgot-password form
# also applies it as a client cooldown after a successful request.
RESET_COOLDOWN_SECONDS = int(os.getenv('RESET_COOLDOWN_SECONDS', '60'))

# Seconds the HTTP client waits for the hosted backend.
BACKEND_TIMEOUT = float(os.getenv('BACKEND_TIMEOUT', '10'))

DEV_MODE = _trueish(os.getenv('DEV_MODE', '0'))

# Optional local overrides: define variables in listit/local_config.py. Keep
# that file out of version control.
try:
    from .local_config import *  # type: ignore  # noqa: F401,F403
except ImportError:
    pass
