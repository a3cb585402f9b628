"""Order and order line models.

An order is never deleted. Status changes go through conditional updates
so concurrent writers (client requests and processor webhooks) cannot
overwrite each other.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.models.base import Base

ORDER_STATUSES = ("pending", "processing", "paid", "failed", "cancelled", "refunded")


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()")
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    currency: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'usd'"))
    items_total: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    coupon_code: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'pending'"))
    payment_status: Mapped[str | None] = mapped_column(Text)
    processor_payment_intent_id: Mapped[str | None] = mapped_column(Text, unique=True)
    processor_checkout_session_id: Mapped[str | None] = mapped_column(Text, unique=True)
    processor_refund_id: Mapped[str | None] = mapped_column(Text)
    amount_refunded: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    failure_code: Mapped[str | None] = mapped_column(Text)
    failure_message: Mapped[str | None] = mapped_column(Text)
    status_version: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    items: Mapped[list[OrderItem]] = relationship(
        back_populates="order",
        lazy="selectin",
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','processing','paid','failed','cancelled','refunded')",
            name="ck_order_status",
        ),
        CheckConstraint(
            "processor_payment_intent_id IS NULL OR processor_checkout_session_id IS NULL",
            name="ck_order_single_processor_ref",
        ),
        CheckConstraint(
            "status = 'pending' OR status = 'cancelled' "
            "OR processor_payment_intent_id IS NOT NULL "
            "OR processor_checkout_session_id IS NOT NULL",
            name="ck_order_processor_ref_required",
        ),
        CheckConstraint("total_amount >= 0", name="ck_order_total_non_negative"),
        CheckConstraint(
            "amount_refunded >= 0 AND amount_refunded <= total_amount",
            name="ck_order_amount_refunded",
        ),
        Index("idx_orders_user_created", "user_id", "created_at"),
        Index("idx_orders_status_updated", "status", "updated_at"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()")
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str | None] = mapped_column(Text)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_item_quantity"),
        CheckConstraint("unit_price >= 0", name="ck_order_item_unit_price"),
    )
