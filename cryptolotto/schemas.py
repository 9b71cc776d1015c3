from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field

from .models import PaymentMethod, PaymentStatus, RoundStatus


class RoundResponse(BaseModel):
    id: str
    round: int
    start_time: datetime
    end_time: datetime
    ticket_price: Decimal
    total_pool: Decimal
    tickets_sold: int
    max_tickets: int
    status: RoundStatus
    winner_ticket_number: Optional[int] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TicketResponse(BaseModel):
    id: str
    lottery_id: str
    user_id: str
    ticket_number: int
    purchase_time: datetime
    price: Decimal
    payment_method: PaymentMethod
    transaction_reference: str
    is_winner: bool

    class Config:
        from_attributes = True


class PaymentResponse(BaseModel):
    id: str
    lottery_id: str
    quantity: int
    amount: Decimal
    payment_method: PaymentMethod
    external_reference: str
    status: PaymentStatus
    created_at: datetime

    class Config:
        from_attributes = True


class DrawResponse(BaseModel):
    drawn: bool
    round: RoundResponse
    winner_ticket_number: Optional[int] = None
    message: str


class StatsResponse(BaseModel):
    total_rounds: int
    total_tickets_sold: int
    total_prizes_paid: Decimal
    active_users: int
    average_tickets_per_round: float


class PurchaseRequest(BaseModel):
    lottery_id: str
    quantity: int = Field(1, ge=1, le=100)


class CheckoutSessionResponse(BaseModel):
    session_id: str
    url: Optional[str] = None


class CreateOrderResponse(BaseModel):
    order_id: str
    approval_url: Optional[str] = None


class CaptureOrderRequest(BaseModel):
    order_id: str = Field(..., min_length=1)


class CryptoPaymentRequest(PurchaseRequest):
    transaction_signature: str = ""


class WebhookAck(BaseModel):
    received: bool = True
