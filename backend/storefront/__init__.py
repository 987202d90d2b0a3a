# backend/storefront/__init__.py
import logging

from flask import Flask

from .config import Config
from .extensions import db, migrate



def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    # Overrides must land before extensions read the config
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.orders import orders_bp
    from .routes.discount_codes import discount_codes_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(discount_codes_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
