"""Uniform response envelope and the client-facing error taxonomy."""

from __future__ import annotations

from typing import Any, Dict

SUCCESS = "Success"
NO_DATA = "No Data"

VALIDATION_ERROR = "Validation Error"
AUTHENTICATION_ERROR = "Authentication Error"
NOT_FOUND = "Not Found"
CONFLICT_ERROR = "Conflict Error"
GATEWAY_TIMEOUT = "Gateway Timeout"
SERVER_ERROR = "Server Error"
IMESSAGE_ERROR = "iMessage Error"

# Error code carried by a message record whose send failed.
SEND_ERROR_CODE = 4

_DEFAULT_MESSAGES = {
    400: "You've made a bad request! Please check your request params & body",
    401: "You are not authorized to access this resource",
    403: "You are forbidden from accessing this resource",
    404: "The requested resource was not found",
    409: "The request conflicts with one already in progress",
    500: "The server has encountered an error",
    504: "The server took too long to response!",
}


def default_message(status: int) -> str:
    return _DEFAULT_MESSAGES.get(status, "Error")


class BridgeError(Exception):
    status = 500
    error_type = SERVER_ERROR

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        error_type: str | None = None,
        summary: str | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status
        if error_type is not None:
            self.error_type = error_type
        self.summary = summary
        self.data = data


class BadRequest(BridgeError):
    status = 400
    error_type = VALIDATION_ERROR


class Unauthorized(BridgeError):
    status = 401
    error_type = AUTHENTICATION_ERROR


class NotFound(BridgeError):
    status = 404
    error_type = NOT_FOUND


class Conflict(BridgeError):
    status = 409
    error_type = CONFLICT_ERROR


class UpstreamUnavailable(BridgeError):
    status = 504
    error_type = GATEWAY_TIMEOUT


class InternalError(BridgeError):
    status = 500
    error_type = SERVER_ERROR


class SendFailed(BridgeError):
    """A send the daemon rejected; ``data`` is the failed message record."""

    error_type = IMESSAGE_ERROR


def success(data: Any = None, message: str = SUCCESS, metadata: Dict[str, Any] | None = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"status": 200, "message": message, "data": data}
    if metadata:
        payload["metadata"] = metadata
    return payload


def no_data() -> Dict[str, Any]:
    return {"status": 200, "message": NO_DATA}


def failure(error: BridgeError) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "status": error.status,
        "message": error.summary or default_message(error.status),
        "error": {"type": error.error_type, "message": error.message},
    }
    if error.data is not None:
        payload["data"] = error.data
    return payload
