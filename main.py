# main.py: exam service app (authoring + attempt protocol), BASE_PATH-aware (psycopg3 + pooling)
# Candidates are anonymous (bound to attempts by an explicit session token);
# authors sign in with Google and own the exams they create.

import os
from contextlib import contextmanager
from typing import Any, Dict, Optional
from urllib.parse import urlparse, parse_qs, unquote, quote, urlsplit, urlunsplit

from flask import Flask, abort, g, jsonify, redirect, request, session

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

# OAuth (Google via Authlib)
from authlib.integrations.flask_client import OAuth

from attempts import ATTEMPT_POLICY, create_attempts_blueprint
from authoring import create_authoring_blueprint

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "0").lower() in {"1", "true", "yes"}
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"},
)

# =============================================================================
# OAuth (Google); OAUTH_REDIRECT_BASE may hold the base or the full callback URL
# =============================================================================
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
OAUTH_REDIRECT_BASE = (os.getenv("OAUTH_REDIRECT_BASE", "") or "").rstrip("/")

oauth: Optional[OAuth] = None
if GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET:
    oauth = OAuth(app)
    oauth.register(
        "google",
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
else:
    print("[Auth] Google OAuth not configured; authoring routes will answer 401.", flush=True)

def _require_oauth() -> OAuth:
    if oauth is None:
        abort(503, description="Google OAuth is not configured.")
    return oauth

def _bp(path: str = "") -> str:
    """Prefix a path with BASE_PATH (if set)."""
    p = path or "/"
    if not p.startswith("/"):
        p = "/" + p
    if BASE_PATH and (p == BASE_PATH or p.startswith(BASE_PATH + "/")):
        return p
    return (BASE_PATH + p) if BASE_PATH else p

def _oauth_callback_url() -> str:
    base = OAUTH_REDIRECT_BASE or (request.url_root.rstrip("/") + (BASE_PATH or ""))
    if base.endswith("/auth/google/callback"):
        return base
    return base.rstrip("/") + "/auth/google/callback"

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
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 10)

def _on_managed_runtime() -> bool:
    # GAE or Cloud Run, etc.
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))

def _log_choice(kwargs: dict, origin: str):
    if "host" in kwargs and isinstance(kwargs["host"], str) and kwargs["host"].startswith("/cloudsql/"):
        print(f"[DB] {origin}: Unix socket -> {kwargs['host']}", flush=True)
    else:
        host = kwargs.get("host", "localhost")
        port = kwargs.get("port", 5432)
        print(f"[DB] {origin}: TCP -> {host}:{port}", flush=True)

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
    host = qs["host"][0] if qs.get("host") else p.hostname
    dbname = (p.path or "").lstrip("/") or (qs["dbname"][0] if qs.get("dbname") else "")
    if not dbname:
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
    if qs.get("sslmode"):
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
        except ValueError as e:
            print(f"[DB] Ignoring DATABASE_URL_LOCAL: {e}", flush=True)

    if DATABASE_URL:
        try:
            parsed = _parse_database_url(DATABASE_URL)
            host = parsed.get("host")
            if (not managed) and isinstance(host, str) and host.startswith("/cloudsql/"):
                print("[DB] DATABASE_URL targets /cloudsql/ but we are local; ignoring and using TCP.", flush=True)
            else:
                _log_choice(parsed, "Using DATABASE_URL (parsed)")
                return parsed
        except ValueError as e:
            print(f"[DB] Ignoring DATABASE_URL: {e}", flush=True)

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
            s = "'" + s.replace("\\", "\\\\").replace("'", r"\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    conninfo = _to_conninfo(_connection_kwargs())
    _pg_pool = ConnectionPool(conninfo=conninfo, min_size=1, max_size=DB_POOL_MAX, open=True)

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

def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows

@contextmanager
def transaction():
    """One atomic unit: commits on clean exit, rolls back on any exception."""
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor(row_factory=dict_row) as cur:
                yield cur

# =============================================================================
# Identity helpers
# =============================================================================
def _session_email() -> Optional[str]:
    u = session.get("user") or {}
    e = (u.get("email") or "").strip().lower()
    return e or None

def ensure_user_row(email: str, full_name: Optional[str] = None) -> int:
    row = fetch_one("SELECT id FROM public.users WHERE email = %s;", (email,))
    if row:
        return row["id"]
    display = full_name or email.split("@", 1)[0].replace(".", " ").title()
    rows = execute_returning("""
        INSERT INTO public.users (email, full_name, role)
        VALUES (%s, %s, 'author')
        ON CONFLICT (email) DO UPDATE SET full_name = COALESCE(public.users.full_name, EXCLUDED.full_name)
        RETURNING id;
    """, (email, display))
    return rows[0]["id"]

def _sanitize_next(next_url: Optional[str]) -> str:
    if not next_url:
        return _bp("/")
    parts = urlsplit(next_url)
    if parts.scheme or parts.netloc:
        return _bp("/")
    path = parts.path or "/"
    if path.startswith(_bp("/login")) or path.startswith(_bp("/auth")):
        return _bp("/")
    return urlunsplit(("", "", path, parts.query, "")) or _bp("/")

_PUBLIC_PATHS = ("/healthz", _bp("/login"), _bp("/auth/"), _bp("/logout"))

@app.before_request
def attach_identity():
    # Candidate routes stay anonymous unless AUTH_REQUIRED; authoring routes check g.user_id themselves.
    email = _session_email()
    if not email:
        if AUTH_REQUIRED and not request.path.startswith(_PUBLIC_PATHS):
            return jsonify({"ok": False, "error": "unauthorized", "code": "unauthorized",
                            "login_url": f"{_bp('/login')}?next={quote(request.full_path, safe='/?=&')}"}), 401
        return
    g.user_email = email
    try:
        g.user_id = ensure_user_row(email)
    except Exception as e:
        print(f"[Auth] ensure_user_row failed for {email}: {e}", flush=True)

# =============================================================================
# Routes (auth, health, identity)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

def login():
    client = _require_oauth()
    session["login_next"] = _sanitize_next(request.args.get("next"))
    return client.google.authorize_redirect(_oauth_callback_url())

def auth_callback():
    client = _require_oauth()
    token = client.google.authorize_access_token()
    info = token.get("userinfo") or client.google.userinfo()
    email = (info.get("email") or "").strip().lower()
    if not email or not info.get("email_verified", True):
        abort(403, description="A verified Google email is required.")
    session["user"] = {"email": email, "name": info.get("name")}
    try:
        ensure_user_row(email, info.get("name"))
    except Exception as e:
        print(f"[Auth] ensure_user_row failed for {email}: {e}", flush=True)
    next_url = _sanitize_next(session.pop("login_next", None))
    return redirect(next_url)

def logout():
    session.clear()
    return redirect(_sanitize_next(request.args.get("next")))

def whoami():
    return jsonify({
        "ok": True,
        "email": getattr(g, "user_email", None),
        "user_id": getattr(g, "user_id", None),
        "login_url": f"{_bp('/login')}?next={quote(_bp('/'), safe='/')}",
    })

for _rule, _view in (
    ("/login", login),
    ("/auth/google/callback", auth_callback),
    ("/logout", logout),
    ("/whoami", whoami),
):
    app.add_url_rule(_bp(_rule), endpoint=_view.__name__, view_func=_view, methods=["GET"])

# =============================================================================
# Blueprints
# =============================================================================
_db_deps: Dict[str, Any] = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "execute_returning": execute_returning,
    "transaction": transaction,
}

app.register_blueprint(create_attempts_blueprint(BASE_PATH, {**_db_deps, "attempt_policy": ATTEMPT_POLICY}))
app.register_blueprint(create_authoring_blueprint(BASE_PATH, _db_deps))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
