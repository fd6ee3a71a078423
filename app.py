import os, secrets, string, time, logging
from functools import wraps

from flask import Blueprint, Flask, current_app, jsonify, request, session
from flask_wtf.csrf import CSRFProtect, CSRFError, generate_csrf

from flask_session import Session
from cachelib.file import FileSystemCache
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_talisman import Talisman
from sqlalchemy.exc import SQLAlchemyError

from auth import AuthService
from crypto_util import DEFAULT_CIPHER, DEFAULT_HASH_METHOD, EncryptionService
from errors import AuthError, CryptoError, NotFoundOrForbidden, StorageError
from models import db
from results import Result
from sessions import SESSION_TIMEOUT, SessionStore
from vault import EntryUpdate, VaultStore, as_text

logger = logging.getLogger(__name__)

TOKEN_KEY = "vault_token"
PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*()_+-=[]{}|;:,.<>?"

csrf = CSRFProtect()
limiter = Limiter(get_remote_address, default_limits=["1000 per day", "200 per hour"])
api = Blueprint("api", __name__, url_prefix="/api")


class VaultServices:
    """Per-app wiring of the encryption service, session table, auth and store."""

    def __init__(self, config):
        self.crypto = EncryptionService(
            config.get("VAULT_MASTER_SECRET"),
            cipher=config["VAULT_CIPHER"],
            hash_method=config["PASSWORD_HASH_METHOD"],
        )
        self.sessions = SessionStore(timeout=config["SESSION_TIMEOUT"])
        self.auth = AuthService(self.crypto, self.sessions)
        self.store = VaultStore(self.crypto)


# ---------- Config ----------
def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)

    # Secrets & DB
    app.config["SECRET_KEY"] = os.environ.get("FLASK_SECRET_KEY", "dev-secret-change-me")

    db_url = os.environ.get("DATABASE_URL")
    if db_url:
        if db_url.startswith("postgres://"):
            db_url = db_url.replace("postgres://", "postgresql+psycopg://", 1)
        elif db_url.startswith("postgresql://"):
            db_url = db_url.replace("postgresql://", "postgresql+psycopg://", 1)
    else:
        db_url = f"sqlite:///{os.path.join(app.instance_path, 'vault.db')}"
    app.config["SQLALCHEMY_DATABASE_URI"] = db_url
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    # Vault crypto: read once, never mutated
    app.config.update(
        VAULT_MASTER_SECRET=os.environ.get("VAULT_MASTER_SECRET"),
        VAULT_CIPHER=os.environ.get("VAULT_CIPHER", DEFAULT_CIPHER),
        PASSWORD_HASH_METHOD=os.environ.get("PASSWORD_HASH_METHOD", DEFAULT_HASH_METHOD),
        SESSION_TIMEOUT=SESSION_TIMEOUT,
    )

    # --- Security: cookies & sessions ---
    app.config.update(
        SESSION_TYPE="cachelib",  # server-side session storage
        SESSION_FILE_DIR=os.path.join(app.instance_path, "flask_session"),
        SESSION_PERMANENT=False,
        PERMANENT_SESSION_LIFETIME=SESSION_TIMEOUT,
        SESSION_COOKIE_SECURE=True,
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        WTF_CSRF_TIME_LIMIT=SESSION_TIMEOUT,
        RATELIMIT_STORAGE_URI="memory://",
        FORCE_HTTPS=os.environ.get("FORCE_HTTPS", "1") == "1",
    )

    if test_config:
        app.config.update(test_config)

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///"):
        os.makedirs(app.instance_path, exist_ok=True)
    if app.config["SESSION_TYPE"] == "cachelib" and "SESSION_CACHELIB" not in app.config:
        os.makedirs(app.config["SESSION_FILE_DIR"], exist_ok=True)
        app.config["SESSION_CACHELIB"] = FileSystemCache(app.config["SESSION_FILE_DIR"], threshold=500)

    # Fails fast on a missing master secret or unknown cipher
    app.extensions["vault"] = VaultServices(app.config)

    # Init extensions
    db.init_app(app)
    Session(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # Security headers / HTTPS
    csp = {
        "default-src": "'self'",
        "img-src": ["'self'", "data:"],
        "style-src": ["'self'", "'unsafe-inline'"],
        "script-src": ["'self'"],
        "font-src": ["'self'", "data:"],
    }
    Talisman(
        app,
        content_security_policy=csp,
        force_https=app.config["FORCE_HTTPS"],
        strict_transport_security=True,
        frame_options="DENY",
        referrer_policy="no-referrer",
        session_cookie_secure=app.config["SESSION_COOKIE_SECURE"],
        content_security_policy_nonce_in=["script-src"],
    )

    app.register_blueprint(api)

    @app.errorhandler(CSRFError)
    def csrf_failed(e):
        return jsonify(success=False, message="Invalid or missing CSRF token"), 400

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify(success=False, message="Too many requests. Try again later."), 429

    with app.app_context():
        db.create_all()

    return app


# ---------- Helpers ----------
def services() -> VaultServices:
    return current_app.extensions["vault"]


def payload() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def field(data: dict, name: str) -> str:
    """Text value of a JSON field; "" when missing or not a scalar."""
    value = as_text(data.get(name))
    return "" if value is None else value


def respond(result: Result):
    return jsonify(result.to_dict()), (401 if result.require_auth else 200)


def begin_session(token: str):
    """Bind a freshly issued vault token to a new server-side session id."""
    services().sessions.destroy(session.get(TOKEN_KEY))
    current_app.session_interface.regenerate(session)
    session[TOKEN_KEY] = token


def auth_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        user_id = services().auth.require_user_id(session.get(TOKEN_KEY), time.time())
        return f(user_id, *args, **kwargs)
    return wrapper


@api.errorhandler(AuthError)
def not_authenticated(e):
    session.clear()
    return respond(Result.fail(e.message, require_auth=True))


@api.errorhandler(NotFoundOrForbidden)
def not_found(e):
    return respond(Result.fail("Entry not found"))


@api.errorhandler(StorageError)
@api.errorhandler(SQLAlchemyError)
@api.errorhandler(CryptoError)
def storage_failed(e):
    db.session.rollback()
    logger.error("Vault request failed: %s", type(e).__name__)
    return respond(Result.fail("Server error. Please try again."))


# ---------- Routes: identity ----------
@api.route("/csrf-token")
def csrf_token():
    return jsonify(success=True, csrfToken=generate_csrf())


@api.route("/check-auth")
def check_auth():
    user = services().auth.current_user(session.get(TOKEN_KEY), time.time())
    return jsonify(success=True, isAuthenticated=user is not None, user=user)


@api.route("/register", methods=["POST"])
@limiter.limit("3/minute; 20/hour")
def register():
    data = payload()
    password = field(data, "password")
    if password != field(data, "confirmPassword"):
        return respond(Result.fail("Passwords do not match"))

    result = services().auth.register(
        field(data, "username"), field(data, "email"), password, time.time())
    if result.success:
        begin_session(result.token)
    return respond(result)


@api.route("/login", methods=["POST"])
@limiter.limit("5/minute; 20/hour")
def login():
    data = payload()
    identifier = field(data, "identifier") or field(data, "email")
    result = services().auth.login(identifier, field(data, "password"), time.time())
    if result.success:
        begin_session(result.token)
    return respond(result)


@api.route("/logout", methods=["GET", "POST"])
def logout():
    result = services().auth.logout(session.get(TOKEN_KEY))
    session.clear()
    return respond(result)


@api.route("/change-password", methods=["POST"])
def change_password():
    data = payload()
    return respond(services().auth.change_password(
        session.get(TOKEN_KEY),
        field(data, "currentPassword"),
        field(data, "newPassword"),
        time.time(),
    ))


@api.route("/update-profile", methods=["POST"])
def update_profile():
    data = payload()
    return respond(services().auth.update_profile(
        session.get(TOKEN_KEY), field(data, "username"), field(data, "email"), time.time()))


# ---------- Routes: vault ----------
@api.route("/entries", methods=["GET"])
@auth_required
def list_entries(user_id):
    records = services().store.list(
        user_id, request.args.get("category"), request.args.get("search"))
    return respond(Result.ok("OK", entries=[r.to_dict() for r in records]))


@api.route("/entries", methods=["POST"])
@auth_required
def create_entry(user_id):
    data = payload()
    entry_id = services().store.create(
        user_id,
        field(data, "title"),
        field(data, "username"),
        field(data, "password"),
        field(data, "url"),
        field(data, "notes"),
        field(data, "category") or "general",
    )
    return respond(Result.ok("Entry created", id=entry_id))


@api.route("/entries/<int:entry_id>", methods=["GET"])
@auth_required
def get_entry(user_id, entry_id):
    record = services().store.get(user_id, entry_id)
    return respond(Result.ok("OK", entry=record.to_dict()))


@api.route("/entries/<int:entry_id>", methods=["PUT"])
@auth_required
def update_entry(user_id, entry_id):
    changes = EntryUpdate.from_mapping(payload())
    if services().store.update(user_id, entry_id, changes):
        return respond(Result.ok("Entry updated"))
    return respond(Result.fail("Failed to update entry"))


@api.route("/entries/<int:entry_id>", methods=["DELETE"])
@auth_required
def delete_entry(user_id, entry_id):
    if services().store.delete(user_id, entry_id):
        return respond(Result.ok("Entry deleted"))
    return respond(Result.fail("Failed to delete entry"))


@api.route("/categories")
@auth_required
def categories(user_id):
    store = services().store
    return respond(Result.ok(
        "OK",
        categories=store.categories(user_id),
        counts=[{"category": c, "count": n} for c, n in store.count_by_category(user_id)],
        total=store.total_count(user_id),
    ))


# ---------- Routes: utilities ----------
@api.route("/generate-password")
def generate_password():
    length = request.args.get("length", 16, type=int)
    length = max(8, min(64, length))
    password = "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))
    return jsonify(success=True, password=password)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    create_app().run(
        host="0.0.0.0",
        port=int(os.environ.get("PORT", 5000)),
        debug=os.environ.get("FLASK_DEBUG", "0") == "1",
    )
