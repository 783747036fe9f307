"""User-facing notice strings and the error-to-notice policy."""

from parley.exceptions import RateLimitedError, TurnAborted, UnauthorizedError

NOTICE_INVALID_KEY = "Invalid API key"
NOTICE_RATE_LIMITED = "Rate limited. Retry later."
NOTICE_MISSING_SEARCH_KEY = "Missing BRAVE_SEARCH_API_KEY"
NOTICE_GENERIC = "Something went wrong. Please try again."


def notice_for_error(error: BaseException | None) -> str | None:
    """Translate a session failure into the notice shown to the user.

    Returns ``None`` for cancellations, which are never surfaced.
    """
    if error is None or isinstance(error, TurnAborted):
        return None
    if isinstance(error, UnauthorizedError):
        return NOTICE_INVALID_KEY
    if isinstance(error, RateLimitedError):
        return NOTICE_RATE_LIMITED
    return str(error) or NOTICE_GENERIC
