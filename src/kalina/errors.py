# kalina: Exception types raised by the model client and the translation of any raw error into a short, friendly AppError.

from typing import Optional

from .models import AppError


class KalinaError(Exception):
    """Base class for Kalina errors."""


class ModelAPIError(KalinaError):
    """Non-success HTTP response from the model API."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ModelResponseError(KalinaError):
    """The model answered, but not with the JSON shape that was requested."""


ERROR_PREFIX = "Sorry, I encountered an error: "


def friendly_error(error: BaseException) -> AppError:
    """
    Classify a raw error by substring matching on its text.

    Order matters: credential phrases first, then the quota code, then
    network/fetch keywords, then the timeout keyword, else the catch-all.
    """
    message = str(error) or error.__class__.__name__
    lower = message.lower()

    if (
        "API key not valid" in message
        or "permission denied" in lower
        or "incorrect api key" in lower
        or "invalid_api_key" in lower
        or " 401" in message
    ):
        return AppError(
            message="Your API key is invalid or lacks the necessary permissions.",
            is_api_key_error=True,
        )
    if "429" in message:
        return AppError(message="You have exceeded your API quota. Please check your account's plan and billing details.")
    if "fetch" in lower or "network" in lower:
        return AppError(message="Could not connect to the service. Please check your internet connection and try again.")
    if "timed out" in lower or "timeout" in lower:
        return AppError(message="The request timed out. Please try again.")
    return AppError(message="An unexpected error occurred. Please try again later.")


def error_content(app_error: AppError) -> str:
    """Text written into the in-flight assistant message when a turn fails."""
    return f"{ERROR_PREFIX}{app_error.message}"
