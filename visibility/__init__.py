"""
Flask application factory.

Creates and configures the JSON API app, registers all blueprints.
"""
from flask import Flask, jsonify


def create_app():
    """Create and configure the Flask application."""
    from visibility.logging_config import configure_logging

    app = Flask(__name__)

    configure_logging(app)

    # Register blueprints
    from visibility.routes.health import bp as health_bp
    from visibility.routes.pipeline import bp as pipeline_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(pipeline_bp)

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({'error': 'Not found'}), 404

    @app.cli.command('run-worker')
    def run_worker_command():
        """Poll the job store and run ready jobs until interrupted."""
        from visibility.pipeline.worker import run_worker
        run_worker()

    # Initialize circuit breakers for the provider families
    from visibility.extensions import redis_client
    from visibility.services.circuit_breaker import init_breakers
    init_breakers(redis_client)

    # Import models so Base.metadata knows about them (required for SQLAlchemy).
    # Schema is managed by Alembic — no init_db() call.
    import importlib
    importlib.import_module('visibility.models.job')
    importlib.import_module('visibility.models.pipeline_run')
    importlib.import_module('visibility.models.brand')
    importlib.import_module('visibility.models.content')
    importlib.import_module('visibility.models.sample_result')
    importlib.import_module('visibility.models.visibility_score')
    importlib.import_module('visibility.models.report')

    return app
