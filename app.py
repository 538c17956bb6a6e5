# Main Flask app
import logging
import traceback

import click
from flask import Flask, jsonify, send_from_directory
from flask_bcrypt import Bcrypt
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from werkzeug.exceptions import HTTPException

from config import config
from errors import APIError, handle_api_error
from models import db
from routes import (
    create_auth_blueprint,
    create_comments_blueprint,
    create_hashtags_blueprint,
    create_media_blueprint,
    create_posts_blueprint,
    create_users_blueprint,
)
from services import Services, recount_all
from uploads import MediaStorage

logger = logging.getLogger(__name__)

bcrypt = Bcrypt()
jwt = JWTManager()


@jwt.unauthorized_loader
def missing_token(reason):
    return jsonify({"error": "No token, authorization denied"}), 401


@jwt.invalid_token_loader
def invalid_token(reason):
    return jsonify({"error": "Token is not valid"}), 401


@jwt.expired_token_loader
def expired_token(jwt_header, jwt_payload):
    return jsonify({"error": "Token has expired"}), 401


def register_error_handlers(app):
    app.register_error_handler(APIError, handle_api_error)

    @app.errorhandler(HTTPException)
    def http_error(error):
        return jsonify({"error": error.description}), error.code

    @app.errorhandler(413)
    def too_large(error):
        return jsonify({"error": "Uploaded file is too large"}), 413

    @app.errorhandler(Exception)
    def server_error(error):
        logger.exception("Unhandled error: %s", error)
        payload = {"error": "Server error"}
        if app.debug:
            payload["details"] = str(error)
            payload["stack"] = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return jsonify(payload), 500


def register_commands(app):
    @app.cli.command('init-db')
    @click.option('--drop', is_flag=True, help='Drop existing tables first.')
    def init_db_command(drop):
        """Create the database tables in a single transaction."""
        init_db(drop=drop)
        click.echo('Database tables initialized successfully')

    @app.cli.command('recount')
    def recount_command():
        """Recompute follower, following and post counters."""
        touched = recount_all(db.session)
        click.echo(f'Recounted counters for {touched} users')


def init_db(drop=False):
    with db.engine.begin() as connection:
        if drop:
            db.metadata.drop_all(connection)
            logger.info("Dropped existing tables")
        db.metadata.create_all(connection)


def create_app(config_name='default', test_config=None):
    app = Flask(__name__)
    app.config.from_object(config[config_name])
    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    # Initialize extensions
    db.init_app(app)
    bcrypt.init_app(app)
    jwt.init_app(app)
    CORS(app, resources={r"/api/*": {"origins": app.config['CORS_ORIGINS']}})

    storage = MediaStorage(
        app.config['UPLOAD_FOLDER'],
        limits={
            key: app.config[key]
            for key in ('AVATAR_MAX_BYTES', 'MUSIC_MAX_BYTES', 'VIDEO_MAX_BYTES')
        },
    )
    services = Services(db.session, bcrypt, storage)
    app.extensions['services'] = services

    # Register blueprints
    app.register_blueprint(create_auth_blueprint(services), url_prefix='/api/auth')
    app.register_blueprint(create_posts_blueprint(services), url_prefix='/api/posts')
    app.register_blueprint(create_hashtags_blueprint(services), url_prefix='/api/hashtags')
    app.register_blueprint(create_comments_blueprint(services), url_prefix='/api/comments')
    app.register_blueprint(create_users_blueprint(services), url_prefix='/api/users')
    app.register_blueprint(create_media_blueprint(services), url_prefix='/api')

    @app.route('/uploads/<path:filename>', methods=['GET'])
    def uploaded_file(filename):
        return send_from_directory(app.config['UPLOAD_FOLDER'], filename)

    @app.route('/', methods=['GET'])
    def welcome():
        return jsonify({"message": "Social network API is running"})

    register_error_handlers(app)
    register_commands(app)
    return app
