from typing import Any, Dict, Optional


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, **extra: Any):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, **self.extra}


class BadRequestError(AppError):
    status_code = 400


class AuthenticationError(AppError):
    status_code = 401


class AuthorizationError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    status_code = 400


class EditWindowExpired(ConflictError):
    status_code = 403


class AccountLocked(ConflictError):
    status_code = 429


class AlreadyBilled(ConflictError):
    status_code = 400


class StoreError(AppError):
    """A database write or read failed; the message is safe to show to clients."""
    status_code = 500
