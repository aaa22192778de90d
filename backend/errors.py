# errors.py — Domain exceptions and the uniform error envelope
# Every failure leaves the API as:
#   {statusCode, message, error, path, timestamp}

from datetime import datetime, timezone
from typing import Any, Dict, List, Union


class KanbanError(Exception):
    """Base class for failures raised by the domain services"""
    status_code = 500
    error = "Internal Server Error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BadRequestError(KanbanError):
    status_code = 400
    error = "Bad Request"


class UnauthorizedError(KanbanError):
    status_code = 401
    error = "Unauthorized"


class ForbiddenError(KanbanError):
    status_code = 403
    error = "Forbidden"


class NotFoundError(KanbanError):
    status_code = 404
    error = "Not Found"


class ConflictError(KanbanError):
    status_code = 409
    error = "Conflict"


def error_body(
    status_code: int,
    message: Union[str, List[str]],
    error: str,
    path: str,
) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "message": message,
        "error": error,
        "path": path,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
