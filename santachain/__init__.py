from __future__ import annotations

import os
from typing import Any, Mapping

from flask import Flask, jsonify

from .errors import register_error_handlers
from .extensions import db, login_manager, migrate, score_client
from .services.matching import ChainLocks
from .views.auth import auth_bp
from .views.chains import chains_bp
from .views.gifts import gifts_bp
from .views.public import public_bp
from .views.users import users_bp


def create_app(config: Mapping[str, Any] | None = None) -> Flask:
    app = Flask(__name__)

    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-change-me")
    app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get("DATABASE_URL", "sqlite:///santachain.db")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    # Neynar identity/score provider
    app.config["NEYNAR_API_KEY"] = os.environ.get("NEYNAR_API_KEY", "")
    app.config["NEYNAR_BASE_URL"] = os.environ.get("NEYNAR_BASE_URL", "https://api.neynar.com")
    app.config["NEYNAR_MIN_USER_SCORE"] = float(os.environ.get("NEYNAR_MIN_USER_SCORE", "0.7"))
    app.config["NEYNAR_TIMEOUT_SECONDS"] = float(os.environ.get("NEYNAR_TIMEOUT_SECONDS", "10"))

    app.config["MATCHING_MAX_ATTEMPTS"] = int(os.environ.get("MATCHING_MAX_ATTEMPTS", "10"))
    # Optional explicit Fernet key; otherwise derived from SECRET_KEY
    app.config["ASSIGNMENT_ENC_KEY"] = os.environ.get("ASSIGNMENT_ENC_KEY", "").strip()
    app.config["LOG_LEVEL"] = os.environ.get("LOG_LEVEL", "INFO").upper()

    if config:
        app.config.update(config)

    app.logger.setLevel(app.config["LOG_LEVEL"])

    db.init_app(app)
    login_manager.init_app(app)
    migrate.init_app(app, db)
    score_client.init_app(app)
    app.extensions["matching_locks"] = ChainLocks()

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "Sign in required"}), 401

    register_error_handlers(app)

    # Blueprints
    app.register_blueprint(public_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(users_bp)
    app.register_blueprint(chains_bp)
    app.register_blueprint(gifts_bp)

    return app
