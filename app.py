"""
app.py - Application Factory
Entry point for the Gradebook Computation Engine API.
Uses the Application Factory pattern for modularity and testing.
"""

import logging

from flask import Flask, jsonify

from config import config
from extensions import db, migrate, login_manager
from gradebook.errors import (
    ComputationError, ConfigurationError, GradebookError, LinkConflictError,
    NotFoundError, RunStateError, ValidationError,
)

logger = logging.getLogger(__name__)

# Most specific first; GradebookError catches anything left
ERROR_STATUS_CODES = (
    (NotFoundError, 404),
    (ValidationError, 400),
    (ConfigurationError, 400),
    (RunStateError, 409),
    (LinkConflictError, 409),
    (ComputationError, 422),
    (GradebookError, 400),
)


def create_app(config_name='development'):
    """
    Application Factory Function

    Args:
        config_name (str): Configuration to use ('development', 'production', 'testing')

    Returns:
        Flask: Configured Flask application instance
    """
    # Initialize Flask app
    app = Flask(__name__)

    # Load configuration from config.py based on environment
    app.config.from_object(config[config_name])
    config[config_name].init_app(app)

    configure_logging(app)

    # Initialize extensions with the app
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    # User loader callback for Flask-Login
    @login_manager.user_loader
    def load_user(user_id):
        """Load user by ID for Flask-Login session management"""
        from models import User
        return db.session.get(User, int(user_id))

    # API clients get a JSON 401 instead of a login redirect
    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'success': False, 'error': 'Authentication required'}), 401

    # Register blueprints (routes)
    register_blueprints(app)

    # Register error handlers
    register_error_handlers(app)

    # Import models so Flask-Migrate can detect them
    with app.app_context():
        import models  # noqa: F401

    return app


def configure_logging(app):
    """
    Root logging setup driven by LOG_LEVEL
    """
    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )
    logging.getLogger('gradebook').setLevel(level)
    app.logger.setLevel(level)


def register_blueprints(app):
    """
    Register all application blueprints (modular route handlers)
    """
    from blueprints.gradebook.routes import gradebook_bp

    app.register_blueprint(gradebook_bp, url_prefix='/api/gradebook')

    @app.route('/health')
    def health():
        """Liveness probe"""
        return jsonify({'status': 'ok'})


def register_error_handlers(app):
    """
    Map engine errors and common HTTP errors to JSON responses
    """
    @app.errorhandler(GradebookError)
    def gradebook_error(error):
        status = next(code for cls, code in ERROR_STATUS_CODES if isinstance(error, cls))
        if status >= 422:
            logger.warning("%s: %s", type(error).__name__, error)
        return jsonify({'success': False, 'error': str(error), 'error_type': type(error).__name__}), status

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'success': False, 'error': 'Not found'}), 404

    @app.errorhandler(403)
    def forbidden(error):
        return jsonify({'success': False, 'error': 'Access denied'}), 403

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()  # Rollback any failed database transactions
        return jsonify({'success': False, 'error': 'Internal server error'}), 500


# Run the application
if __name__ == '__main__':
    app = create_app('development')

    app.run(
        host='0.0.0.0',
        port=5000,
        debug=True
    )
