"""
errors.py — failure taxonomy shared by the handshake and the proxy.

Each error carries the HTTP status and the fixed public message sent to
the caller. Whatever detail is passed to the constructor stays server-side.
"""


class ServiceError(Exception):
    status_code = 500
    message = "Unexpected Error. See server logs for details."

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.message)
        self.detail = detail


class MissingParameter(ServiceError):
    status_code = 400
    message = "Required parameters missing"

    def __init__(self, detail: str = "", message: str | None = None):
        super().__init__(detail)
        if message is not None:
            self.message = message


class StateMismatch(ServiceError):
    status_code = 403
    message = "Request origin cannot be verified"


class SignatureInvalid(ServiceError):
    status_code = 400
    message = "HMAC validation failed"


class UpstreamRequestFailed(ServiceError):
    status_code = 500
    message = "Unexpected Error. See server logs for details."


class ProxyTargetUnreachable(ServiceError):
    status_code = 500
    message = "Could not get resource"
