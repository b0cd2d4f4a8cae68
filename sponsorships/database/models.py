"""SQLAlchemy database models for sponsorship payments."""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Sponsorship(Base):
    """
    Sponsorship (donation order) records table.

    One row per logical payment attempt. Rows are never deleted and double as
    the audit trail. The two unique columns are what the reservation protocol
    and the reconciliation writes rely on:

    - idempotency_key: at most one row per caller-supplied key
    - payment_provider_order_id: at most one row per remote order
    """

    __tablename__ = "sponsorships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    idempotency_key: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, default="anonymous")
    user_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    sponsor_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_identifier: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    payment_provider: Mapped[str] = mapped_column(String(20), nullable=False, default="paypal")
    payment_provider_order_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    payment_provider_capture_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    reserved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded')",
            name="valid_status",
        ),
        CheckConstraint(
            "payment_provider IN ('paypal', 'stripe')",
            name="valid_payment_provider",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_sponsorships_user_status", "user_id", "status"),
        Index("idx_sponsorships_target", "target_identifier"),
    )

    @property
    def is_ordered(self) -> bool:
        """True once the remote order id has been written back."""
        return bool(self.payment_provider_order_id)

    def __repr__(self) -> str:
        """String representation of Sponsorship."""
        return (
            f"<Sponsorship(id={self.id}, provider={self.payment_provider}, "
            f"order={self.payment_provider_order_id}, status={self.status})>"
        )
