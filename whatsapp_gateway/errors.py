from typing import Any, Dict


class GatewayError(Exception):
    """Base error; rendered by the app as ``{"error": message}`` with ``status_code``."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_json(self) -> Dict[str, Any]:
        return {"error": self.message}


class AuthError(GatewayError):
    status_code = 401

    def __init__(self, message: str = "Invalid API key"):
        super().__init__(message)


class ValidationError(GatewayError):
    status_code = 400


class NotConnectedError(GatewayError):
    status_code = 503

    def __init__(self, message: str = "WhatsApp not connected"):
        super().__init__(message)


class SendFailure(GatewayError):
    """
    Send errors are reported in the body, not the status line: callers get
    HTTP 200 with ``success: false``.
    """

    status_code = 200

    def __init__(self, message: str, phone: Any = None):
        super().__init__(message)
        self.phone = phone

    def to_json(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, "phone": self.phone}


class LogoutFailure(GatewayError):
    status_code = 500
