from __future__ import annotations

from typing import Literal

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

ErrorType = Literal["bad_request", "unauthorized", "forbidden", "not_found", "rate_limit", "offline"]

STATUS_BY_TYPE: dict[str, int] = {
    "bad_request": status.HTTP_400_BAD_REQUEST,
    "unauthorized": status.HTTP_401_UNAUTHORIZED,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "rate_limit": status.HTTP_429_TOO_MANY_REQUESTS,
    "offline": status.HTTP_503_SERVICE_UNAVAILABLE,
}

MESSAGES: dict[str, str] = {
    "bad_request:api": "The request couldn't be processed. Please check your input and try again.",
    "bad_request:approval": "No pending tool call matches the submitted approval.",
    "unauthorized:chat": "You need to sign in to use this chat.",
    "forbidden:chat": "This conversation belongs to another user.",
    "not_found:chat": "The requested conversation was not found.",
    "not_found:stream": "The requested stream was not found.",
    "rate_limit:chat": "You have exceeded your maximum number of messages for the day.",
    "offline:chat": "We're having trouble sending your message. Please check your connection and try again.",
}


class ChatError(Exception):
    """A request-level failure with a machine readable ``<type>:<surface>`` code."""

    def __init__(self, code: str, cause: str | None = None) -> None:
        error_type, _, surface = code.partition(":")
        if error_type not in STATUS_BY_TYPE:
            raise ValueError(f"Unknown error type: {error_type}")
        self.code = code
        self.type = error_type
        self.surface = surface
        self.cause = cause
        self.status_code = STATUS_BY_TYPE[error_type]
        self.message = MESSAGES.get(code, "Something went wrong. Please try again later.")
        super().__init__(self.message)

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status_code,
            content={"code": self.code, "message": self.message, "cause": self.cause},
        )


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    return exc.to_response()


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return ChatError("bad_request:api", cause=str(exc.errors()[:1])).to_response()
