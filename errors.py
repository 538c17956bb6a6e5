# Error types shared by services and routes
from flask import jsonify


class APIError(Exception):
    """Base error carrying the HTTP status it maps to."""

    status_code = 500
    message = 'Server error'

    def __init__(self, message=None, errors=None):
        super().__init__(message or self.message)
        if message:
            self.message = message
        self.errors = errors

    def to_dict(self):
        payload = {"error": self.message}
        if self.errors:
            payload["errors"] = self.errors
        return payload


class ValidationError(APIError):
    status_code = 400
    message = 'Validation failed'


class InvalidCredentials(ValidationError):
    message = 'Invalid credentials'


class AuthenticationError(APIError):
    status_code = 401
    message = 'User not authenticated'


class AuthorizationError(APIError):
    status_code = 403
    message = 'Not authorized'


class NotFoundError(APIError):
    status_code = 404
    message = 'Not found'


class ConflictError(APIError):
    status_code = 400
    message = 'Conflict'


class AlreadyFollowing(ConflictError):
    message = 'Already following this user'


class NotFollowing(ConflictError):
    message = 'Not following this user'


def handle_api_error(error):
    return jsonify(error.to_dict()), error.status_code
