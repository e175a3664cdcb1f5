"""
Flask application factory.

Creates and configures the Flask app, registers all blueprints.
"""
from flask import Flask


def create_app():
    """Create and configure the Flask application."""
    from app.errors import register_error_handlers
    from app.logging_config import configure_logging

    app = Flask(__name__)
    app.json.sort_keys = False

    configure_logging(app)
    register_error_handlers(app)

    # Register blueprints
    from app.routes.health import bp as health_bp
    from app.routes.privacy import bp as privacy_bp
    from app.routes.marketplace import bp as marketplace_bp
    from app.routes.benchmarks import bp as benchmarks_bp
    from app.routes.comparison import bp as comparison_bp
    from app.routes.insights import bp as insights_bp
    from app.routes.dashboard import bp as dashboard_bp
    from app.routes.indexer import bp as indexer_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(privacy_bp)
    app.register_blueprint(marketplace_bp)
    app.register_blueprint(benchmarks_bp)
    app.register_blueprint(comparison_bp)
    app.register_blueprint(insights_bp)
    app.register_blueprint(dashboard_bp)
    app.register_blueprint(indexer_bp)

    # Initialize circuit breakers for outbound services
    from app.extensions import redis_client
    from app.services.circuit_breaker import init_breakers
    init_breakers(redis_client)

    # Import models so Base.metadata knows about them.
    # Schema is managed by Alembic — no create_all() call.
    from app.database import import_models
    import_models()

    return app
