from flask import Flask, jsonify
from flask_cors import CORS
import os
import sqlite3

import click
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash

# Import configuration (loads .env)
from utils.config import Config
# Import security middleware
from utils.security_middleware import SecurityMiddleware

# Import utilities
from utils.db_utils import db_manager, get_db_connection, return_db_connection
from utils.logging_utils import app_logger, setup_logging, init_request_logging, log_info, log_error
from utils.rate_limiter import rate_limiter
from utils.security_utils import validate_email
from utils.auth_utils import ROLE_ADMIN

# Import blueprints
from blueprints.main_routes import main_bp
from blueprints.auth_routes import auth_bp
from blueprints.course_routes import course_bp
from blueprints.enrollment_routes import enrollment_bp
from blueprints.payment_routes import payment_bp
from blueprints.teacher_routes import teacher_bp
from blueprints.assignment_routes import assignment_bp
from blueprints.notification_routes import notification_bp
from blueprints.admin_routes import admin_bp

BLUEPRINTS = (main_bp, auth_bp, course_bp, enrollment_bp, payment_bp, teacher_bp,
              assignment_bp, notification_bp, admin_bp)


def register_error_handlers(app):
    """JSON bodies for errors raised outside the route handlers."""

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'success': False, 'message': 'Resource not found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'success': False, 'message': 'Method not allowed'}), 405

    @app.errorhandler(413)
    def payload_too_large(error):
        return jsonify({'success': False, 'message': 'Uploaded data is too large'}), 413

    @app.errorhandler(Exception)
    def unhandled_exception(error):
        if isinstance(error, HTTPException):
            return jsonify({'success': False, 'message': error.description}), error.code
        log_error(app_logger, "Unhandled exception", error=str(error), type=type(error).__name__)
        message = str(error) if app.config.get('DEBUG') else 'Internal server error'
        return jsonify({'success': False, 'message': message}), 500


def register_commands(app):
    @app.cli.command('init-db')
    def init_db_command():
        """Create the database tables."""
        db_manager.initialize_database()
        click.echo(f"Initialized database at {db_manager.db_path}")

    @app.cli.command('create-admin')
    @click.argument('email')
    @click.argument('password')
    @click.option('--name', default='Administrator', help='Full name of the admin user.')
    def create_admin_command(email, password, name):
        """Create an ADMIN account."""
        if not validate_email(email):
            raise click.BadParameter('Invalid email address', param_hint='email')
        conn = None
        try:
            conn = get_db_connection()
            conn.execute('''
                INSERT INTO users (email, password_hash, full_name, role)
                VALUES (?, ?, ?, ?)
            ''', (email.lower(), generate_password_hash(password), name, ROLE_ADMIN))
            conn.commit()
        except sqlite3.IntegrityError:
            raise click.ClickException(f'A user with email {email} already exists')
        finally:
            if conn:
                return_db_connection(conn)
        log_info(app_logger, "Admin account created", email=email)
        click.echo(f"Created admin {email}")


def create_app(config_overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    setup_logging(app.config['LOG_LEVEL'], app.config['LOG_FILE'])

    CORS(app, origins=app.config['CORS_ORIGIN'])

    # Initialize security middleware
    SecurityMiddleware(app)
    init_request_logging(app)
    rate_limiter.init_app(app)
    db_manager.init_app(app)

    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

    for blueprint in BLUEPRINTS:
        app.register_blueprint(blueprint)

    register_error_handlers(app)
    register_commands(app)

    log_info(app_logger, "Application created", database=app.config['DATABASE_PATH'],
             debug=app.config.get('DEBUG'), testing=app.config.get('TESTING'))
    return app


if __name__ == '__main__':
    app = create_app()
    db_manager.initialize_database()
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=app.config['DEBUG'])
