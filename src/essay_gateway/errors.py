"""Error taxonomy shared by the engine and the HTTP layer.

Every error the caller can see is a GatewayError carrying the HTTP status it
maps to. Store failures never show up here: they are recovered inside the
store implementations.
"""


class GatewayError(Exception):
    """Base class for errors that terminate a request with a JSON error body."""

    status_code = 500
    classification = "internal_error"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ConfigError(GatewayError):
    """Missing or empty credential configuration. Never retried."""

    status_code = 500
    classification = "config_error"


class ValidationError(GatewayError):
    """Bad caller input."""

    status_code = 400
    classification = "validation_error"


class UpstreamClientError(GatewayError):
    """The upstream rejected this specific request (non-429 4xx).

    Rotating credentials cannot fix it, so the upstream status and message are
    handed back to the caller verbatim.
    """

    status_code = 400
    classification = "client_error"


class RetryableUpstreamError(GatewayError):
    """Rate limit, server error, network failure or blocked/empty content."""

    status_code = 503
    classification = "retryable_upstream_error"


class ExhaustionError(GatewayError):
    """Every credential in the pool was tried once and none succeeded."""

    status_code = 429
    classification = "all_keys_exhausted"

    def __init__(self, message: str, errors=()):
        super().__init__(message)
        self.errors = list(errors)


class CancelledRunError(GatewayError):
    """The caller went away before the pool was exhausted."""

    # nginx's "client closed request"
    status_code = 499
    classification = "cancelled"


def mask_credential(credential: str) -> str:
    """'AIzaSyD...abcd' -> '...abcd'. Keys are never logged in full."""
    if len(credential) <= 4:
        return "****"
    return f"...{credential[-4:]}"
