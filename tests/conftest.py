"""Shared fixtures for the StreetSage test suite.

Provides a Flask test client wired to a temporary SQLite database and a
small place list (Kildare, Dublin, Cork) as the only place source.
"""

import atexit
import os
import tempfile

import pytest

# Point the DB at a temp file BEFORE importing app/models (they read DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["STREETSAGE_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

PLACES_CSV = """county,town,estate
Kildare,Celbridge,The Grove
Kildare,Celbridge,Castletown
Kildare,Naas,
Dublin,Swords,Ridgewood
Cork,Douglas,Grange
"""

_places_fd, _places_path = tempfile.mkstemp(suffix=".csv")
with os.fdopen(_places_fd, "w", encoding="utf-8") as fh:
    fh.write(PLACES_CSV)
os.environ["PLACES_SOURCES"] = _places_path
atexit.register(lambda: os.unlink(_places_path) if os.path.exists(_places_path) else None)

# Suppress the SECRET_KEY startup guard
os.environ.setdefault("SECRET_KEY", "test-secret-key")

# Flask-Limiter's per-IP budget would trip on a long test run
os.environ["RATELIMIT_ENABLED"] = "false"

# Every optional integration starts switched off; tests opt in with patch.dict
for _key in ("MODERATOR_TOKEN", "RATE_LIMIT_SECRET", "HCAPTCHA_SECRET",
             "HCAPTCHA_SITEKEY", "RESEND_API_KEY", "ALERT_EMAIL_TO", "SENTRY_DSN"):
    os.environ.pop(_key, None)

import app as app_module  # noqa: E402
from app import app  # noqa: E402
from models import init_db, _get_db  # noqa: E402

# Base template expects csrf_token() to exist. Provide a benign test fallback.
app.jinja_env.globals.setdefault("csrf_token", lambda: "")

MODERATOR_TOKEN = "mod-secret-token"


@pytest.fixture(autouse=True)
def _fresh_db():
    """Reset the database and the cached place index before every test."""
    init_db()
    conn = _get_db()
    for table in ("reviews", "suggestions", "submission_log", "estates", "overpass_cache"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    app_module._place_index = None
    yield


@pytest.fixture()
def client():
    """Flask test client with CSRF disabled (we're testing logic, not CSRF)."""
    app.config["TESTING"] = True
    app.config["WTF_CSRF_ENABLED"] = False
    with app.test_client() as c:
        yield c


@pytest.fixture()
def moderator_headers():
    return {"Authorization": f"Bearer {MODERATOR_TOKEN}"}


@pytest.fixture()
def moderator_env(monkeypatch):
    monkeypatch.setenv("MODERATOR_TOKEN", MODERATOR_TOKEN)
    return MODERATOR_TOKEN
