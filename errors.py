"""
Domain errors raised by the store modules.

Each error carries the HTTP status the API layer answers with, so services
never import FastAPI and handlers never guess.
"""


class StoreError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StoreError):
    status_code = 400


class AuthError(StoreError):
    status_code = 401


class PermissionDenied(StoreError):
    status_code = 403


class NotFoundError(StoreError):
    status_code = 404


class ConflictError(StoreError):
    status_code = 409
