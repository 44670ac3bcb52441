from typing import Any, Dict, Optional, Union

from fastapi import status
from fastapi.encoders import jsonable_encoder


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.data = data or {}

    @property
    def detail(self) -> Union[str, Dict[str, Any]]:
        """HTTP detail payload: the bare message, or the message plus context to act on."""
        if not self.data:
            return self.message
        return jsonable_encoder({"message": self.message, **self.data})


class ValidationError(ServiceError):
    """Malformed input, or an amount above the allocation or remaining balance."""

    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST, data)


class NotFoundError(ServiceError):
    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status.HTTP_404_NOT_FOUND, data)


class ConflictError(ServiceError):
    """Duplicate pending intent, already-settled fee, expired or non-pending settlement target."""

    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, status.HTTP_409_CONFLICT, data)


class SignatureError(ServiceError):
    """Confirmation authenticity failure. Raised before any state is touched."""

    def __init__(self, message: str = "Invalid payment signature") -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class GatewayError(ServiceError):
    """Upstream order creation failed; no intent was persisted."""

    def __init__(self, message: str = "Payment gateway order creation failed") -> None:
        super().__init__(message, status.HTTP_502_BAD_GATEWAY)


class InternalError(ServiceError):
    def __init__(self, message: str = "Internal storage error") -> None:
        super().__init__(message, status.HTTP_500_INTERNAL_SERVER_ERROR)
