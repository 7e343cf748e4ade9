"""
Check Manager - Exceptions.

============================================================
CUSTOM EXCEPTIONS
============================================================

- CheckManagerError: Base exception
- ManagerDisabledError: Operation attempted while disabled
- NoEligibleBrokerError: No broker passes filtering/probing
- NotFoundError: Backend lookup miss (triggers fallback)
- BackendError: Transport, HTTP or decoding failure
- RandomSourceError: Entropy source unavailable
- TrapURLError: Bundle cannot yield a submission URL
- ConfigurationError: Invalid configuration
- InvalidTransitionError: Illegal manager state change

============================================================
FAILURE SAFETY
============================================================

Resolution and reconciliation are single-attempt. Errors
abort the current cycle and leave cached state untouched;
callers decide when to retry.

============================================================
"""

from typing import Any, Optional


class CheckManagerError(Exception):
    """
    Base exception for check manager errors.

    All check manager exceptions inherit from this class.
    """

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ManagerDisabledError(CheckManagerError):
    """
    Raised when initialization is attempted on a disabled manager.

    Expected in environments without a configured backend.
    """

    def __init__(self) -> None:
        super().__init__("unable to initialize trap, check manager is disabled")


class NoEligibleBrokerError(CheckManagerError):
    """Raised when no broker detail is active, capable and reachable."""

    def __init__(
        self,
        message: str,
        module: Optional[str] = None,
        candidates: int = 0,
    ) -> None:
        details: dict[str, Any] = {"candidates": candidates}
        if module:
            details["module"] = module
        super().__init__(message, details)
        self.module = module
        self.candidates = candidates


class BackendError(CheckManagerError):
    """Error from a backend call (transport, HTTP status, decoding)."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        request_url: Optional[str] = None,
        response_body: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if status_code is not None:
            details["status_code"] = status_code
        if request_url:
            details["request_url"] = request_url
        if original_error is not None:
            details["original_error"] = str(original_error)
        super().__init__(message, details)
        self.status_code = status_code
        self.request_url = request_url
        self.response_body = response_body
        self.original_error = original_error

    def is_server_error(self) -> bool:
        return self.status_code is not None and 500 <= self.status_code < 600


class NotFoundError(BackendError):
    """
    Raised when a looked-up record does not exist.

    Resolution treats this as a miss and falls through.
    """

    def __init__(
        self,
        resource: str,
        request_url: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"not found: {resource}",
            status_code=404,
            request_url=request_url,
        )
        self.resource = resource


class RandomSourceError(CheckManagerError):
    """Raised when the entropy source cannot produce a secret."""

    def __init__(self, original_error: Optional[Exception] = None) -> None:
        details = {}
        if original_error is not None:
            details["original_error"] = str(original_error)
        super().__init__("unable to read from random source", details)
        self.original_error = original_error


class TrapURLError(CheckManagerError):
    """Raised when a check bundle cannot yield a submission URL."""

    def __init__(self, reason: str, bundle_cid: Optional[str] = None) -> None:
        message = f"unable to derive trap url: {reason}"
        if bundle_cid:
            message = f"{message} ({bundle_cid})"
        super().__init__(message, {"bundle_cid": bundle_cid} if bundle_cid else None)
        self.bundle_cid = bundle_cid


class ConfigurationError(CheckManagerError):
    """
    Raised when configuration is invalid.

    Should be caught at startup.
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        actual_value: Optional[str] = None,
    ) -> None:
        details = {}
        if config_key:
            details["config_key"] = config_key
        if actual_value is not None:
            details["actual"] = actual_value
        super().__init__(message, details)
        self.config_key = config_key


class InvalidTransitionError(CheckManagerError):
    """Raised on a manager state change the lifecycle does not allow."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"invalid state transition {current} -> {target}",
            {"from": current, "to": target},
        )
        self.current = current
        self.target = target
