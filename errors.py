"""Error taxonomy shared by the request pipeline.

``ServiceError`` subclasses carry what the exception handlers in ``main`` need
to render the response envelope. ``StartupError`` is never rendered; it aborts
the application lifespan.
"""


class ServiceError(Exception):
    status = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    """Malformed or missing client input. Rendered as ``status: fail``."""

    status = "fail"
    status_code = 400


class PayloadTooLarge(ValidationError):
    status_code = 413


class InferenceError(ServiceError):
    """Decode, forward pass or persistence failure.

    ``message`` describes the failure for the server log only; clients always
    get ``CLIENT_MESSAGE``.
    """

    CLIENT_MESSAGE = "An error occurred while processing your request."


class StartupError(RuntimeError):
    """Model fetch or credential load failed; the server must not start."""
