"""
API error type and the JSON error handlers registered on the app.
"""
import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

from models import db

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """An error that maps directly onto an HTTP response."""

    def __init__(self, status_code, message, errors=None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.errors = errors

    @classmethod
    def bad_request(cls, message, errors=None):
        return cls(400, message, errors)

    @classmethod
    def validation(cls, errors):
        return cls(400, 'Validation failed', errors)

    @classmethod
    def unauthorized(cls, message='Unauthorized'):
        return cls(401, message)

    @classmethod
    def forbidden(cls, message='Forbidden'):
        return cls(403, message)

    @classmethod
    def not_found(cls, message='Not found'):
        return cls(404, message)

    @classmethod
    def conflict(cls, message):
        return cls(409, message)

    def to_dict(self):
        body = {"success": False, "error": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


def ok(data=None, status=200):
    return jsonify({"success": True, "data": data}), status


def register_error_handlers(app):
    @app.errorhandler(ApiError)
    def handle_api_error(err):
        db.session.rollback()
        if err.status_code >= 500:
            logger.error("API error %s: %s", err.status_code, err.message)
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(err):
        return jsonify({"success": False, "error": err.description or err.name}), err.code

    @app.errorhandler(Exception)
    def handle_unexpected(err):
        db.session.rollback()
        logger.exception("Unhandled error: %s", err)
        return jsonify({"success": False, "error": "Internal server error"}), 500
