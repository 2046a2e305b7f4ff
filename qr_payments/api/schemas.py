"""
Pydantic schemas for API request/response models.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from qr_payments.core.states import AuthMethod


class ApiResponse(BaseModel):
    """Envelope wrapping every JSON response."""

    success: bool = Field(..., description="Whether the operation succeeded")
    message: str = Field(..., description="Human-readable outcome")
    data: Optional[Any] = Field(default=None, description="Operation result")
    errors: Optional[Any] = Field(default=None, description="Error details on failure")


def _upper_currency(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not v.isalpha():
        raise ValueError("Currency must be a 3-letter ISO code")
    return v.upper()


# ============================================================================
# Customer
# ============================================================================


class GenerateQrCodeRequest(BaseModel):
    """Request schema for creating a session and its QR code."""

    customer_id: str = Field(..., min_length=1, max_length=64, description="Customer identifier")
    currency: Optional[str] = Field(
        default=None, min_length=3, max_length=3, description="Currency code (e.g., USD)"
    )
    size: Optional[int] = Field(default=None, ge=100, le=1000, description="QR size in pixels")
    format: Optional[str] = Field(
        default=None, pattern="^(png|jpg|svg)$", description="QR image format"
    )
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Session metadata")
    phone_number: Optional[str] = Field(
        default=None,
        pattern=r"^\+?[0-9]{7,15}$",
        description="Texted if the confirmation request cannot be pushed",
    )

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Validate currency format."""
        return _upper_currency(v)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"customer_id": "cust-1", "currency": "USD", "size": 300, "format": "png"}
            ]
        }
    }


class RegenerateQrCodeRequest(BaseModel):
    """Request schema for regenerating a session's QR code."""

    customer_id: str = Field(..., min_length=1, max_length=64, description="Owning customer")
    security_token: str = Field(..., min_length=1, description="Session security token")
    size: Optional[int] = Field(default=None, ge=100, le=1000, description="QR size in pixels")
    format: Optional[str] = Field(
        default=None, pattern="^(png|jpg|svg)$", description="QR image format"
    )


class ConfirmTransactionRequest(BaseModel):
    """Request schema for customer confirmation."""

    auth_method: AuthMethod = Field(..., description="Second factor used")
    auth_data: Dict[str, Any] = Field(default_factory=dict, description="Second factor payload")


class CancelTransactionRequest(BaseModel):
    """Request schema for customer cancellation."""

    reason: str = Field(default="Customer cancelled", max_length=500)


# ============================================================================
# Merchant
# ============================================================================


class ScanQrCodeRequest(BaseModel):
    """Request schema for a merchant scan."""

    qr_data: str = Field(..., min_length=1, description="Decoded QR payload")
    merchant_id: str = Field(..., min_length=1, max_length=64, description="Scanning merchant")


class ProcessPaymentRequest(BaseModel):
    """Request schema for merchant amount entry."""

    session_id: str = Field(..., min_length=1, description="Scanned session")
    merchant_id: str = Field(..., min_length=1, max_length=64, description="Merchant identifier")
    customer_id: str = Field(..., min_length=1, max_length=64, description="Customer identifier")
    amount: Decimal = Field(..., gt=0, description="Payment amount in major units")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    merchant_name: Optional[str] = Field(default=None, max_length=255)
    location: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=500)
    items: List[str] = Field(default_factory=list)
    tip_amount: Decimal = Field(default=Decimal("0"), ge=0)
    reference_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Validate currency format."""
        return _upper_currency(v)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "session_id": "qr_123e4567-e89b-12d3-a456-426614174000",
                    "merchant_id": "merch-1",
                    "customer_id": "cust-1",
                    "amount": "100.00",
                    "currency": "USD",
                    "merchant_name": "Corner Cafe",
                }
            ]
        }
    }


class RefundRequest(BaseModel):
    """Request schema for a refund."""

    amount: Decimal = Field(..., gt=0, description="Refund amount in major units")
    reason: str = Field(default="", max_length=500, description="Refund reason")
    manager_approval_code: Optional[str] = Field(
        default=None, description="Manager approval credential (presence is checked)"
    )


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
