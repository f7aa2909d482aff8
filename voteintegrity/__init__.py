# voteintegrity/__init__.py

import logging
import os

from flask import Flask, jsonify
from flask_jwt_extended import JWTManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from werkzeug.middleware.proxy_fix import ProxyFix

# Extensions are created unbound and attached in create_app()
db = SQLAlchemy()  # Database ORM
migrate = Migrate()  # DB migrations
jwt = JWTManager()
limiter = Limiter(key_func=get_remote_address)


@jwt.expired_token_loader
def expired_token_callback(jwt_header, jwt_payload):
    return jsonify({"error": "Token has expired", "reason": "token_expired"}), 401


@jwt.unauthorized_loader
def missing_token_callback(reason):
    return jsonify({"error": reason, "reason": "unauthorized"}), 401


@jwt.invalid_token_loader
def invalid_token_callback(reason):
    return jsonify({"error": reason, "reason": "unauthorized"}), 401


def _configure_logging(level):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(config_object=None, **overrides):
    """Application factory.

    ``config_object`` defaults to ``voteintegrity.config.Config``; keyword
    overrides are applied on top (tests pass a temp database and log dir).
    Services may be injected through ``services_factory``.
    """
    from voteintegrity.config import Config
    from voteintegrity.services import EXTENSION_KEY, build_services

    services_factory = overrides.pop('services_factory', build_services)

    app = Flask(__name__)
    app.config.from_object(config_object or Config)
    app.config.update(overrides)
    app.config.setdefault('RATELIMIT_DEFAULT', '10000/hour')

    _configure_logging(app.config.get('LOG_LEVEL', 'INFO'))

    # Fix proxy headers for HTTPS
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

    db.init_app(app)
    migrate.init_app(app, db, directory=os.path.join(os.path.dirname(__file__), 'database', 'migrations'))
    jwt.init_app(app)
    limiter.init_app(app)

    # Ensure model modules are imported so SQLAlchemy metadata is populated
    from voteintegrity.database import models  # noqa: F401

    services = services_factory(app)
    app.extensions[EXTENSION_KEY] = services

    from voteintegrity.routes import bp
    app.register_blueprint(bp)

    if app.config.get('CLEANUP_ENABLED'):
        services.cleanup.start()

    return app
