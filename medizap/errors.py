from datetime import datetime, timezone
from typing import Any, Optional


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ApiError(Exception):
    """Any failure that should reach the client as an error envelope."""

    def __init__(self, status_code: int, error: str, message: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message or error)
        self.status_code = status_code
        self.error = error
        self.message = message or error
        self.code = code


def error_body(error: str, message: str, code: Optional[str] = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "error": error, "message": message}
    if code:
        body["code"] = code
    body["timestamp"] = iso_now()
    return body
