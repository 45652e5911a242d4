# main.py: CFMTI assessment portal, BASE_PATH-aware (psycopg3 + pooling)
# Trainees sign in with credentials from the trainees table (built-in list when offline).

import os
from contextlib import contextmanager
from urllib.parse import urlparse, parse_qs, unquote
from typing import Optional

from flask import Flask, g, session, flash

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

# Backends / blueprints
from admin import create_admin_blueprint
from exam import create_exam_blueprint
from reviewer import client_from_env, create_reviewer_blueprint
from exam_content_loader import load_exam_modules, load_initial_trainees
from session_store import SessionPersistence
from store import OFFLINE_MSG, TRAINEE_FETCH_ERROR_MSG, ResultsStore, TraineeDirectory
from views import ExamController

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
STATIC_URL_PATH = (BASE_PATH + "/static") if BASE_PATH else "/static"

app = Flask(
    __name__,
    static_folder="static",
    static_url_path=STATIC_URL_PATH,
    template_folder="templates",
)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"},
)

def _bp(path: str = "") -> str:
    """Prefix a path with BASE_PATH (if set)."""
    p = path or "/"
    if not p.startswith("/"):
        p = "/" + p
    if BASE_PATH and (p == BASE_PATH or p.startswith(BASE_PATH + "/")):
        return p
    return (BASE_PATH + p) if BASE_PATH else p

# =============================================================================
# App configuration
# =============================================================================
APP_ID = os.getenv("APP_ID", "cfmti-assessment")
EXAM_DURATION_MIN = int(os.getenv("EXAM_DURATION_MIN") or 60)
EXAM_PASS_PERCENT = float(os.getenv("EXAM_PASS_PERCENT") or 70)
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "cfm-admin")
REVIEW_CHAT_ENABLED = os.getenv("REVIEW_CHAT_ENABLED", "1").lower() in {"1", "true", "yes"}
ALLOW_SIGNUP = os.getenv("ALLOW_SIGNUP", "1").lower() in {"1", "true", "yes"}

# =============================================================================
# DB configuration
# =============================================================================
INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}
DB_POOL_TIMEOUT = float(os.getenv("DB_POOL_TIMEOUT") or 10)

def _on_managed_runtime() -> bool:
    # GAE or Cloud Run, etc.
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))

def _db_configured() -> bool:
    return bool(DATABASE_URL or DATABASE_URL_LOCAL or all([DB_NAME, DB_USER, DB_PASS]))

def _log_choice(kwargs: dict, origin: str):
    if "host" in kwargs and isinstance(kwargs["host"], str) and kwargs["host"].startswith("/cloudsql/"):
        print(f"[DB] {origin}: Unix socket -> {kwargs['host']}")
    else:
        host = kwargs.get("host", "localhost")
        port = kwargs.get("port", 5432)
        print(f"[DB] {origin}: TCP -> {host}:{port}")

def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    # Normalize SA-style scheme to plain postgres for psycopg usage
    SA_PREFIXES = (
        "postgresql+psycopg://",
        "postgres+psycopg://",
        "postgresql+psycopg2://",
        "postgres+psycopg2://",
    )
    for pref in SA_PREFIXES:
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    host = p.hostname
    if "host" in qs and qs["host"]:
        host = qs["host"][0]
    dbname = (p.path or "").lstrip("/")
    if not dbname:
        if "dbname" in qs and qs["dbname"]:
            dbname = qs["dbname"][0]
        else:
            raise ValueError("DATABASE_URL missing dbname")
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if "sslmode" in qs and qs["sslmode"]:
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set for TCP mode.")
    return {
        "host": DB_HOST_OVERRIDE or "127.0.0.1",
        "port": int(DB_PORT_OVERRIDE or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "sslmode": "disable",
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _socket_kwargs() -> dict:
    if not all([INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS must be set for socket mode.")
    return {
        "host": f"/cloudsql/{INSTANCE_CONNECTION_NAME}",
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _connection_kwargs() -> dict:
    managed = _on_managed_runtime()

    if FORCE_TCP and not managed:
        kwargs = _tcp_kwargs(); _log_choice(kwargs, "FORCE_TCP"); return kwargs

    if not managed and DATABASE_URL_LOCAL:
        try:
            kwargs = _parse_database_url(DATABASE_URL_LOCAL)
            _log_choice(kwargs, "Using DATABASE_URL_LOCAL (parsed)")
            return kwargs
        except Exception as e:
            print(f"[DB] Ignoring DATABASE_URL_LOCAL: {e}")

    if DATABASE_URL:
        try:
            parsed = _parse_database_url(DATABASE_URL)
            host = parsed.get("host")
            if (not managed) and isinstance(host, str) and host.startswith("/cloudsql/"):
                print("[DB] DATABASE_URL targets /cloudsql/ but we are local; ignoring and using TCP.")
            else:
                _log_choice(parsed, "Using DATABASE_URL (parsed)")
                return parsed
        except Exception as e:
            print(f"[DB] Ignoring DATABASE_URL: {e}")

    if managed:
        kwargs = _socket_kwargs(); _log_choice(kwargs, "Managed runtime"); return kwargs

    kwargs = _tcp_kwargs(); _log_choice(kwargs, "Local dev"); return kwargs

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def _to_conninfo(kwargs: dict) -> str:
    # Build libpq conninfo string from kwargs dict
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if any(ch.isspace() for ch in s) or "'" in s or '"' in s:
            s = "'" + s.replace("'", r"\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    conninfo = _to_conninfo(_connection_kwargs())
    _pg_pool = ConnectionPool(conninfo=conninfo, min_size=1, max_size=6, timeout=DB_POOL_TIMEOUT)

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()

def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows

# =============================================================================
# Exam content, store, trainee directory
# =============================================================================
MODULES = list(load_exam_modules())
if not MODULES:
    print("[exam] no exam modules loaded; check exam_content/content_index.json")

store = ResultsStore(
    {"fetch_all": fetch_all, "fetch_one": fetch_one, "execute": execute, "execute_returning": execute_returning},
    APP_ID,
    offline_reason=None if _db_configured() else "Database configuration missing. Running in offline mode.",
)
directory = TraineeDirectory(load_initial_trainees())
chat_client = client_from_env()

_store_started = False

def _start_store():
    """Connect, seed and subscribe once per process."""
    global _store_started
    if _store_started:
        return
    _store_started = True
    store.connect()
    directory.attach(store)

def _notify(title: str, message: str):
    flash(f"{title}: {message}", "error")

def get_controller() -> ExamController:
    ctl = getattr(g, "exam_controller", None)
    if ctl is None:
        ctl = ExamController(
            SessionPersistence(session),
            MODULES,
            store=store,
            duration_seconds=EXAM_DURATION_MIN * 60,
            notify=_notify,
        )
        g.exam_controller = ctl
    return ctl

@app.before_request
def attach_identity():
    _start_store()
    g.user = get_controller().user

# =============================================================================
# Jinja helpers
# =============================================================================
@app.context_processor
def inject_user_and_base():
    banner = None
    if not store.ready:
        banner = OFFLINE_MSG
    elif directory.fetch_error:
        banner = TRAINEE_FETCH_ERROR_MSG
    return {
        "current_user": getattr(g, "user", None),
        "base_path": BASE_PATH,
        "bp": _bp,
        "store_banner": banner,
        "offline_reason": store.offline_reason,
        "exam_duration_min": EXAM_DURATION_MIN,
    }

# =============================================================================
# Routes (health)
# =============================================================================
@app.get("/healthz")
def healthz():
    if not store.ready:
        return ("offline", 200)
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

@app.get("/favicon.ico")
def favicon():
    return ("", 204)

# =============================================================================
# Blueprints
# =============================================================================
app.register_blueprint(create_exam_blueprint(BASE_PATH, {
    "controller": get_controller,
    "modules": MODULES,
    "directory": directory,
    "store": store,
    "chat_client": chat_client,
    "allow_signup": ALLOW_SIGNUP,
    "pass_percent": EXAM_PASS_PERCENT,
    "review_chat_enabled": REVIEW_CHAT_ENABLED,
}))

_admin_deps = {
    "controller": get_controller,
    "store": store,
    "directory": directory,
    "modules": MODULES,
    "admin_password": ADMIN_PASSWORD,
}
app.register_blueprint(create_admin_blueprint("", _admin_deps, name="admin"))
if BASE_PATH:
    app.register_blueprint(create_admin_blueprint(BASE_PATH, _admin_deps, name="admin_alias"))

app.register_blueprint(create_reviewer_blueprint(BASE_PATH, {
    "controller": get_controller,
    "chat_client": chat_client,
    "enabled": REVIEW_CHAT_ENABLED,
}))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
