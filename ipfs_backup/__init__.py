import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask


def configure_logging(app):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = app.config.get('LOG_DIR') or os.path.join(
        os.path.dirname(os.path.dirname(__file__)), 'data', 'logs'
    )
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'ipfs-backup.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    # requests/urllib3 log every connection at DEBUG
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, overrides=None):
    """Flask application factory"""
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from ipfs_backup.config import config, validate_config, safe_config
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    # Configure logging
    configure_logging(app)

    # Fail fast on missing or invalid settings
    if not app.config.get('TESTING'):
        validate_config(app.config)
    if app.config.get('BACKUP_ENCRYPTION_KEY'):
        from ipfs_backup.utils.crypto import load_key
        load_key(app.config['BACKUP_ENCRYPTION_KEY'])

    app.logger.info(f"Configuration: {safe_config(app.config)}")

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    os.makedirs(app.config['LOCAL_BACKUP_DIR'], exist_ok=True)

    # Build backup services
    from ipfs_backup.backup import BackupServices
    app.extensions['ipfs_backup'] = BackupServices(app.config)

    # Register blueprints
    from ipfs_backup.routes import backups_routes, health_routes
    app.register_blueprint(backups_routes.bp)
    app.register_blueprint(health_routes.bp)

    # Register CLI commands
    from ipfs_backup.cli import register_commands
    register_commands(app)

    # Initialize and start scheduler
    if app.config.get('SCHEDULER_ENABLED') and not app.config.get('TESTING'):
        from ipfs_backup.scheduler import init_scheduler, start_scheduler, stop_scheduler
        import atexit

        # Development: only in the Flask reloader child process
        is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
        if app.config.get('DEBUG', False) and not is_reloader_child:
            app.logger.info("Scheduler initialization skipped in reloader parent process")
        else:
            init_scheduler(app)
            start_scheduler()
            atexit.register(stop_scheduler)
            app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler disabled")

    return app
