import logging
import traceback
import uuid

from flask import current_app, g, jsonify, request
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException

from app_models import db

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Error carrying the HTTP status the API should answer with"""

    def __init__(self, message, status_code=400, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload or {}


def error_response(message, status_code, stack=None, **extra):
    body = {
        'message': message,
        'stack': stack if current_app.config.get('ENV_NAME') != 'production' else None,
        'requestId': g.get('request_id'),
    }
    body.update(extra)
    return jsonify(body), status_code


def assign_request_id():
    g.request_id = request.headers.get('X-Request-Id') or uuid.uuid4().hex[:16]


def register_error_handlers(app):
    app.before_request(assign_request_id)

    @app.errorhandler(ApiError)
    def handle_api_error(error):
        if error.status_code >= 500:
            logger.error("%s %s -> %s: %s", request.method, request.path, error.status_code, error.message)
        elif error.status_code != 401:
            logger.warning("%s %s -> %s: %s", request.method, request.path, error.status_code, error.message)
        return error_response(error.message, error.status_code, **error.payload)

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        if error.code == 404:
            return error_response(f"Not Found - {request.path}", 404)
        return error_response(error.description or error.name, error.code)

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(error):
        db.session.rollback()
        logger.warning("Integrity error on %s %s: %s", request.method, request.path, error.orig)
        return error_response('Duplicate or invalid record', 400)

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        db.session.rollback()
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return error_response(str(error) or 'Server error', 500, stack=traceback.format_exc())
