from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("total_stock >= 0", name="ck_products_total_stock_non_negative"),
        Index("ix_products_category_archived", "category", "is_archived"),
    )

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text)
    category = Column(String(50), index=True)
    image = Column(String(500))
    price = Column(Numeric(10, 2), nullable=False, default=0)
    total_stock = Column(Integer, nullable=False, default=0)
    is_archived = Column(Boolean, nullable=False, default=False, index=True)

    # Edit lease; is_locked implies lock_expiry is set
    is_locked = Column(Boolean, nullable=False, default=False)
    locked_by = Column(String(64))
    locked_by_name = Column(String(200))
    locked_at = Column(DateTime(timezone=True))
    lock_expiry = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_user_archived", "user_id", "is_archived"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    user_name = Column(String(200))
    order_status = Column(String(20), nullable=False, default="pending", index=True)
    payment_status = Column(String(20), nullable=False, default="pending")
    payment_method = Column(String(50))
    payment_proof = Column(String(500))
    total_amount = Column(Numeric(12, 2), nullable=False)
    address = Column(Text)
    notes = Column(Text)
    order_date = Column(DateTime(timezone=True), nullable=False)
    order_update_date = Column(DateTime(timezone=True), nullable=False)
    confirmation_date = Column(DateTime(timezone=True))
    payment_deadline = Column(DateTime(timezone=True), index=True)
    is_archived = Column(Boolean, nullable=False, default=False, index=True)
    cancellation_reason = Column(String(200))

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False, index=True)
    title = Column(String(200), nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")


class ActivityLog(Base):
    """Append-only audit trail of product and order mutations."""

    __tablename__ = "activity_logs"
    __table_args__ = (
        Index("ix_activity_entity_ts", "entity_type", "entity_id", "timestamp"),
        Index("ix_activity_actor_ts", "actor_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(Integer, nullable=False)
    entity_title = Column(String(200), nullable=False)
    actor_id = Column(String(64), nullable=False)
    actor_name = Column(String(200), nullable=False)
    action = Column(String(30), nullable=False)
    changes = Column(JSON, nullable=False, default=dict)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)


class CalendarCredential(Base):
    __tablename__ = "calendar_credentials"

    user_id = Column(String(64), primary_key=True)
    access_token = Column(Text)
    refresh_token = Column(Text)
    calendar_id = Column(String(300))
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
