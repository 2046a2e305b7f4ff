"""FastAPI application and routes."""
from .main import app
from .schemas import (
    ApiResponse,
    ConfirmTransactionRequest,
    GenerateQrCodeRequest,
    ProcessPaymentRequest,
    RefundRequest,
    ScanQrCodeRequest,
)

__all__ = [
    "app",
    "ApiResponse",
    "ConfirmTransactionRequest",
    "GenerateQrCodeRequest",
    "ProcessPaymentRequest",
    "RefundRequest",
    "ScanQrCodeRequest",
]
