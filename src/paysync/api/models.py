from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID
from pydantic import BaseModel, Field

class CartItem(BaseModel):
    product_id: str = Field(..., min_length=1, description="Catalog product id")
    quantity: int = Field(..., gt=0)

class CheckoutRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    items: List[CartItem] = Field(..., min_length=1)
    address: Dict[str, Any] = Field(..., description="Shipping and contact details")
    amount: Decimal = Field(..., description="Client-computed total, checked against server prices")
    currency: Optional[str] = Field(None, min_length=3, max_length=3)

class CheckoutResponse(BaseModel):
    order_id: UUID
    merchant_reference: str
    tracking_id: str
    redirect_url: str
    amount: Decimal

class ReconcileResponse(BaseModel):
    order_id: UUID
    merchant_reference: str
    tracking_id: str
    gateway_status: str = Field(..., description="Normalised status reported by the gateway")
    status: str = Field(..., description="Local order status after reconciliation")
    paid: bool
    transitioned: bool = Field(..., description="Whether this call changed the payment state")

class GatewayStatusResponse(BaseModel):
    tracking_id: str
    status: str
    status_code: Optional[int] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    confirmation_code: Optional[str] = None
    payment_method: Optional[str] = None
    merchant_reference: Optional[str] = None

class ChannelRegistrationRequest(BaseModel):
    url: str = Field(..., min_length=8)
    notification_type: str = Field("GET", pattern="^(GET|POST)$")

class ChannelResponse(BaseModel):
    channel_id: Optional[str] = None
    url: Optional[str] = None
    notification_type: Optional[str] = None
    status: Optional[str] = None
