"""SQLAlchemy database models for orders and newsletter subscriptions."""
from datetime import datetime, timezone
from decimal import Decimal
from typing import List

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

ORDER_STATUSES = ("processing", "shipped", "delivered", "cancelled")

# SQLite only autoincrements INTEGER primary keys
Identifier = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Completed purchase, one row per confirmed payment intent.

    Both the human-readable order ID and the Stripe PaymentIntent ID are
    unique; the latter is what stops a second confirmation from recording the
    same charge twice.
    """

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    stripe_payment_intent_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    customer_address: Mapped[str] = mapped_column(Text, nullable=False)
    customer_city: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    customer_postal_code: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    customer_country: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    order_status: Mapped[str] = mapped_column(String(20), nullable=False, default="processing")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order",
        order_by="OrderItem.id",
        cascade="save-update, merge, delete",
        passive_deletes=True,
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "order_status IN ('processing', 'shipped', 'delivered', 'cancelled')",
            name="valid_order_status",
        ),
        CheckConstraint("total_amount >= 0", name="non_negative_total"),
        Index("idx_orders_created_desc", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(order_id={self.order_id}, "
            f"total={self.total_amount}, status={self.order_status})>"
        )


class OrderItem(Base):
    """Line item of an order; rows keep the order in which they were submitted."""

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("orders.order_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint("price > 0", name="positive_price"),
    )

    def __repr__(self) -> str:
        return f"<OrderItem(order_id={self.order_id}, name={self.name}, qty={self.quantity})>"


class NewsletterSubscription(Base):
    """Newsletter opt-in state. Rows are deactivated, never deleted."""

    __tablename__ = "newsletter_subscriptions"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    subscribed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<NewsletterSubscription(email={self.email}, active={self.is_active})>"
