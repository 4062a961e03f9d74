"""
Application factory for the single-use signed URL service.

``create_app`` builds the Flask app used by the issuance API, the edge hook
(``role="edge"``) and Celery tasks. All of them share one ``db`` and one
configuration layer; only the log file name differs per role.
"""
import os
import uuid

from flask import Flask, g, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from flask_talisman import Talisman

from config.settings import Config, DevelopmentConfig, ProductionConfig, TestingConfig

_CONFIGS = {
    "production": ProductionConfig,
    "testing": TestingConfig,
    "development": DevelopmentConfig,
}

# Issuance endpoints attach their own limits on top of RATELIMIT_DEFAULT
limiter = Limiter(key_func=get_remote_address)

_db_target_logged = False


def _config_for_env():
    return _CONFIGS.get(os.environ.get("FLASK_ENV", "development"), DevelopmentConfig)


def create_app(config_class=None, role="web"):
    """
    Create and configure the Flask application.

    Args:
        config_class: Configuration class. Chosen from FLASK_ENV when None.
        role: Process role used to name the log file ("web", "edge").

    Returns:
        Flask: Configured application
    """
    instance_path = os.environ.get("SINGLEUSE_INSTANCE_PATH")
    if instance_path:
        os.makedirs(instance_path, exist_ok=True)
        app = Flask(__name__, instance_path=instance_path)
    else:
        app = Flask(__name__)

    app.config.from_object(config_class or _config_for_env())

    # pytest must never reach a real database or Redis, whatever FLASK_ENV says
    if os.environ.get("PYTEST_CURRENT_TEST"):
        app.config.update(
            TESTING=True,
            SQLALCHEMY_DATABASE_URI=TestingConfig.SQLALCHEMY_DATABASE_URI,
            SQLALCHEMY_ENGINE_OPTIONS={},
            URL_SIGNING_KEY=TestingConfig.URL_SIGNING_KEY,
            PUBLIC_BASE_URL=TestingConfig.PUBLIC_BASE_URL,
            RATELIMIT_ENABLED=False,
            RATELIMIT_STORAGE_URL=TestingConfig.RATELIMIT_STORAGE_URL,
            FORCE_HTTPS=False,
        )

    from singleuse.structured_logging import configure_structlog

    configure_structlog(app, role=role)

    db_uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
    if not db_uri:
        raise RuntimeError("DATABASE_URL is not set")
    # SQLite has no row-level conditional write semantics across processes
    if db_uri.startswith("sqlite:") and not app.config.get("TESTING"):
        raise RuntimeError(
            "SQLite is only supported in TESTING. Point DATABASE_URL at PostgreSQL."
        )
    _log_database_target(app)

    init_extensions(app)
    register_blueprints(app)
    register_error_handlers(app)

    if app.config.get("FORCE_HTTPS") or not app.debug:
        Talisman(
            app,
            force_https=app.config.get("FORCE_HTTPS", False),
            strict_transport_security=app.config.get("STRICT_TRANSPORT_SECURITY", True),
            content_security_policy=app.config.get("CONTENT_SECURITY_POLICY"),
        )

    return app


def _log_database_target(app):
    """Log where grants are stored, once per process, without credentials."""
    global _db_target_logged
    if _db_target_logged:
        return
    from sqlalchemy.engine.url import make_url
    from sqlalchemy.exc import ArgumentError

    try:
        url = make_url(app.config["SQLALCHEMY_DATABASE_URI"])
    except ArgumentError:
        app.logger.warning("Grant store: unparseable database URI")
    else:
        app.logger.info(
            "Grant store: %s://%s%s/%s",
            url.drivername,
            url.host or "",
            f":{url.port}" if url.port else "",
            url.database or "",
        )
    _db_target_logged = True


def init_extensions(app):
    """Bind db, migrations, CORS, rate limiting and request ids to ``app``."""
    from singleuse.models import db

    db.init_app(app)
    Migrate(app, db)

    CORS(app, resources={r"/api/*": {"origins": app.config.get("CORS_ORIGINS", "*")}})

    app.config.setdefault("RATELIMIT_DEFAULT", Config.RATELIMIT_DEFAULT)
    app.config.setdefault("RATELIMIT_STORAGE_URI", app.config.get("RATELIMIT_STORAGE_URL"))
    limiter.init_app(app)

    @app.before_request
    def _assign_request_id():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

    @app.after_request
    def _echo_request_id(response):
        if g.get("request_id"):
            response.headers.setdefault("X-Request-ID", g.request_id)
        return response


def register_blueprints(app):
    from singleuse.api.routes import api_bp

    app.register_blueprint(api_bp, url_prefix="/api")


def register_error_handlers(app):
    """JSON bodies for every HTTP error the API can raise."""
    from singleuse.error_utils import error_response, handle_api_exception

    simple_errors = {
        400: ("BadRequest", "Bad request"),
        401: ("Unauthorized", "Unauthorized"),
        403: ("Forbidden", "Access denied"),
        404: ("NotFound", "Not found"),
        405: ("MethodNotAllowed", "Method not allowed"),
        429: ("TooManyRequests", "Too many requests"),
    }

    def _make_handler(code, message, status):
        def _handler(error):
            return error_response(code, message, status)

        return _handler

    for status, (code, message) in simple_errors.items():
        app.register_error_handler(status, _make_handler(code, message, status))

    @app.errorhandler(500)
    def internal_error(error):
        original = getattr(error, "original_exception", None) or error
        return handle_api_exception(
            app.logger,
            "Unhandled server error",
            exc_info=original,
            path=request.path,
        )
