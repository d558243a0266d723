"""Error taxonomy shared by the data store, the domain modules and the API.

Every error maps to an HTTP status; the API renders them as ``{"error": ...}``.
"""


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"error": self.message, "kind": type(self).__name__}


class ValidationError(AppError):
    status_code = 400


class AuthError(AppError):
    status_code = 401


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    status_code = 409


class InvalidTransitionError(AppError):
    status_code = 409


class InsufficientPointsError(AppError):
    status_code = 400


class BackendUnavailableError(AppError):
    status_code = 503


class ForbiddenError(AppError):
    status_code = 403
