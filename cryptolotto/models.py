from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    String, Integer, DateTime, Boolean, Numeric, Text, ForeignKey, Index,
    CheckConstraint, UniqueConstraint, Enum as SQLEnum, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class RoundStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DRAWING = "DRAWING"
    COMPLETED = "COMPLETED"


class PaymentMethod(str, Enum):
    CARD = "card"
    TWO_STEP_ORDER = "two-step-order"
    ON_CHAIN = "on-chain"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class LotteryRound(Base):
    __tablename__ = "lottery_rounds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    round: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ticket_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_pool: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    tickets_sold: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_tickets: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[RoundStatus] = mapped_column(
        SQLEnum(RoundStatus), default=RoundStatus.ACTIVE, nullable=False
    )
    winner_ticket_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    winner_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("tickets_sold >= 0 AND tickets_sold <= max_tickets", name="ck_round_capacity"),
        CheckConstraint("ticket_price > 0", name="ck_round_price"),
        # At most one ACTIVE round.
        Index(
            "uq_round_single_active", "status", unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )


class Ticket(Base):
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    lottery_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("lottery_rounds.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    ticket_number: Mapped[int] = mapped_column(Integer, nullable=False)
    purchase_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(SQLEnum(PaymentMethod), nullable=False)
    transaction_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    batch_sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    payment_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_winner: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("lottery_id", "ticket_number", name="uq_ticket_number"),
        UniqueConstraint(
            "payment_method", "transaction_reference", "batch_sequence",
            name="uq_ticket_payment_unit",
        ),
    )


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    lottery_id: Mapped[str] = mapped_column(String(36), ForeignKey("lottery_rounds.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(SQLEnum(PaymentMethod), nullable=False)
    external_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("payment_method", "external_reference", name="uq_payment_reference"),
        Index("idx_payment_status_created", "status", "created_at"),
    )
