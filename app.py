"""
ScreenHub - screen fleet control plane
Main Flask application entry point
"""
import os
import time
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from config import config
from extensions import limiter, login_manager, socketio
from models import db, User, UserRole
from utils.errors import ControlPlaneError, RateLimited


def create_app(config_name=None, test_config=None):
    """Application factory pattern"""

    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])
    if test_config:
        app.config.update(test_config)
    config[config_name].init_app(app)

    # Initialize extensions
    db.init_app(app)

    # CORS configuration
    CORS(app, resources={
        r"/*": {
            "origins": app.config['CORS_ORIGINS'],
            "methods": ["GET", "POST", "OPTIONS"],
            "allow_headers": ["Authorization", "Content-Type", "X-Client-Info"]
        }
    })

    # Rate limiting (moving window per caller, storage and limits from config)
    limiter.init_app(app)

    # SocketIO initialization (event handlers must be queued before init_app)
    import socketio_events
    cors_origins = app.config['CORS_ORIGINS']
    if cors_origins == ['*']:
        cors_origins = '*'
    socketio.init_app(app,
                      cors_allowed_origins=cors_origins,
                      async_mode='threading',
                      logger=app.config['DEBUG'],
                      engineio_logger=app.config['DEBUG'])

    # Login manager (API tokens only, no sessions)
    login_manager.init_app(app)

    @login_manager.request_loader
    def load_user_from_request(request):
        from utils.permissions import load_user_from_header
        return load_user_from_header(request.headers.get('Authorization'))

    # Setup logging
    setup_logging(app)

    # Control plane services
    from utils.services import ControlPlane
    app.control_plane = ControlPlane(  # type: ignore
        app,
        alert_broadcaster=socketio_events.broadcast_alert,
        status_broadcaster=socketio_events.broadcast_screen_status
    )

    # Register blueprints
    from routes.api_routes import api_bp, setup_api_logger
    from routes.device_routes import device_bp
    from routes.broadcast_routes import broadcast_bp
    from routes.telemetry_routes import telemetry_bp

    app.register_blueprint(api_bp, url_prefix='/api')
    app.register_blueprint(device_bp)
    app.register_blueprint(broadcast_bp)
    app.register_blueprint(telemetry_bp)
    setup_api_logger(app)

    register_error_handlers(app)

    # Initialize scheduler for sweeps and reconciliation
    from utils.scheduler import init_scheduler, shutdown_scheduler
    init_scheduler(app)

    # Register shutdown handler
    import atexit
    atexit.register(shutdown_scheduler)

    return app


def register_error_handlers(app):
    """Render every error as JSON"""

    @app.errorhandler(ControlPlaneError)
    def control_plane_error(error):
        if error.status_code >= 500:
            db.session.rollback()
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(429)
    def rate_limited(error):
        retry_after = None
        current = getattr(limiter, 'current_limit', None)
        if current is not None:
            retry_after = max(1, int(current.reset_at - time.time()))
        elif getattr(error, 'limit', None) is not None:
            retry_after = max(1, error.limit.limit.get_expiry())
        limited = RateLimited(f'Rate limit exceeded: {error.description}', retry_after)
        return jsonify(limited.to_dict()), limited.status_code

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': 'not_found', 'message': 'Endpoint not found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'error': 'method_not_allowed'}), 405

    @app.errorhandler(Exception)
    def internal_error(error):
        if isinstance(error, HTTPException):
            return jsonify({'error': error.name.lower().replace(' ', '_'), 'message': error.description}), error.code
        db.session.rollback()
        app.logger.exception(f'Unhandled error: {error}')
        return jsonify({'error': 'internal_error'}), 500


def setup_logging(app):
    """Configure application logging"""

    if not app.debug and not app.testing:
        # Create logs directory if it doesn't exist
        if not os.path.exists(app.config['LOG_FOLDER']):
            os.mkdir(app.config['LOG_FOLDER'])

        # Application log handler
        file_handler = RotatingFileHandler(
            app.config['APP_LOG_FILE'],
            maxBytes=10240000,  # 10MB
            backupCount=10
        )
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
        ))
        file_handler.setLevel(logging.INFO)
        app.logger.addHandler(file_handler)

        app.logger.setLevel(logging.INFO)
        app.logger.info('ScreenHub startup')


def create_default_admin(app):
    """
    Create the default admin user if no user exists

    Returns:
        The admin's API token (shown once), or None if users already exist
    """
    with app.app_context():
        if User.query.count() > 0:
            return None

        admin = User(
            username=app.config['ADMIN_USERNAME'],
            email='admin@screenhub.local',
            role=UserRole.ADMIN
        )
        db.session.add(admin)
        db.session.flush()
        token = admin.issue_api_token()
        db.session.commit()
        app.logger.info(f"Created default admin user: {admin.username}")
        return token


if __name__ == '__main__':
    app = create_app()

    # Create database tables if they don't exist
    with app.app_context():
        db.create_all()

    token = create_default_admin(app)
    if token:
        print(f"Default admin API token (store it now, it is not shown again): {token}")

    # Run the application with SocketIO
    socketio.run(
        app,
        host=app.config['FLASK_HOST'],
        port=app.config['FLASK_PORT'],
        debug=app.config['DEBUG'],
        allow_unsafe_werkzeug=True
    )
