import logging

from flask import Flask

from .config import Config
from .extensions import db, migrate



def create_app(config_object=Config) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object)

    logging.getLogger("fiscalpos").setLevel(app.config.get("FISCAL_LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.sales import sales_bp
    from .routes.invoices import invoices_bp
    from .routes.cash import cash_bp
    from .routes.reports import reports_bp
    from .routes.resolutions import resolutions_bp
    from .routes.payment_methods import payment_methods_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(invoices_bp)
    app.register_blueprint(cash_bp)
    app.register_blueprint(reports_bp)
    app.register_blueprint(resolutions_bp)
    app.register_blueprint(payment_methods_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    if app.config.get("FISCAL_WORKER_AUTOSTART") and not app.config.get("TESTING"):
        from .services.validation_worker import get_worker
        get_worker(app).start()

    return app
