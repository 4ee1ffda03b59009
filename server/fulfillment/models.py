from decimal import Decimal
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from .db import Base
from .statuses import (
    AvailabilityStatus,
    DeliveryStatus,
    EarningStatus,
    MovementType,
    OrderStatus,
    OwnerType,
    PaymentStatus,
    PayoutStatus,
    ProductStatus,
    UserRole,
    values,
)
from .utils import utcnow


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, nullable=False)
    full_name = Column(String(200), nullable=True)
    phone = Column(String(50), nullable=True)
    role = Column(Enum(*values(UserRole), name="user_role"), nullable=False, default=UserRole.BUYER.value)
    is_active = Column(Boolean, default=True, nullable=False)

    bank_name = Column(String(120), nullable=True)
    bank_account_name = Column(String(200), nullable=True)
    bank_account_number = Column(String(64), nullable=True)

    is_online = Column(Boolean, default=False, nullable=False)
    current_latitude = Column(Numeric(10, 7), nullable=True)
    current_longitude = Column(Numeric(10, 7), nullable=True)
    location_updated_at = Column(DateTime, nullable=True)
    max_delivery_radius_km = Column(Numeric(8, 2), nullable=False, default=Decimal("10"))
    total_deliveries = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    seller_plans = relationship("SellerPlan", back_populates="seller")


class SellerPlan(Base):
    __tablename__ = "seller_plans"

    id = Column(Integer, primary_key=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_type = Column(Enum("commission", "subscription", name="seller_plan_type"), nullable=False)
    commission_rate = Column(Numeric(5, 2), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    payment_status = Column(Enum("pending", "paid", name="seller_plan_payment_status"), nullable=False, default="pending")
    created_at = Column(DateTime, default=utcnow, nullable=False)

    seller = relationship("User", back_populates="seller_plans")


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    price = Column(Numeric(14, 2), nullable=False)
    status = Column(Enum(*values(ProductStatus), name="product_status"), nullable=False, default=ProductStatus.LIVE.value)

    stock_quantity = Column(Integer, nullable=False, default=0)
    reserved_stock = Column(Integer, nullable=False, default=0)
    minimum_order_quantity = Column(Integer, nullable=False, default=1)
    low_stock_threshold = Column(Integer, nullable=False, default=5)
    enable_stock_management = Column(Boolean, nullable=False, default=True)
    allow_backorders = Column(Boolean, nullable=False, default=False)
    availability_status = Column(
        Enum(*values(AvailabilityStatus), name="product_availability_status"),
        nullable=False,
        default=AvailabilityStatus.AVAILABLE.value,
    )

    latitude = Column(Numeric(10, 7), nullable=True)
    longitude = Column(Numeric(10, 7), nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    seller = relationship("User")
    movements = relationship("StockMovement", back_populates="product", order_by="StockMovement.id")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
        CheckConstraint("reserved_stock >= 0", name="ck_products_reserved_non_negative"),
        CheckConstraint("reserved_stock <= stock_quantity", name="ck_products_reserved_within_stock"),
    )

    @property
    def available_quantity(self) -> int:
        return (self.stock_quantity or 0) - (self.reserved_stock or 0)


class StockMovement(Base):
    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    movement_type = Column(Enum(*values(MovementType), name="stock_movement_type"), nullable=False)
    quantity = Column(Integer, nullable=False)
    previous_quantity = Column(Integer, nullable=False)
    new_quantity = Column(Integer, nullable=False)
    reserved_delta = Column(Integer, nullable=False, default=0)
    reference_type = Column(String(50), nullable=True)
    reference_id = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    performed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    product = relationship("Product", back_populates="movements")

    __table_args__ = (
        Index("ix_stock_movements_product_id_id", "product_id", "id"),
        Index("ix_stock_movements_reference", "reference_type", "reference_id"),
    )


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    total_amount = Column(Numeric(14, 2), nullable=False)
    payment_status = Column(
        Enum(*values(PaymentStatus), name="order_payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING.value,
    )
    order_status = Column(
        Enum(*values(OrderStatus), name="order_status"),
        nullable=False,
        default=OrderStatus.PLACED.value,
    )
    payment_reference = Column(String(120), nullable=True)

    shipping_name = Column(String(200), nullable=True)
    shipping_phone = Column(String(50), nullable=True)
    shipping_address = Column(Text, nullable=True)
    shipping_city = Column(String(120), nullable=True)

    pickup_latitude = Column(Numeric(10, 7), nullable=True)
    pickup_longitude = Column(Numeric(10, 7), nullable=True)
    dropoff_latitude = Column(Numeric(10, 7), nullable=True)
    dropoff_longitude = Column(Numeric(10, 7), nullable=True)
    delivery_fee = Column(Numeric(14, 2), nullable=True)
    delivery_distance_km = Column(Numeric(8, 2), nullable=True)

    assigned_agent_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id", cascade="all, delete-orphan")
    delivery = relationship("Delivery", back_populates="order", uselist=False)


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    product_name = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(14, 2), nullable=False)
    line_total = Column(Numeric(14, 2), nullable=False)
    is_backorder = Column(Boolean, nullable=False, default=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")

    __table_args__ = (CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),)


class Delivery(Base):
    __tablename__ = "deliveries"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True)
    agent_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    status = Column(
        Enum(*values(DeliveryStatus), name="delivery_status"),
        nullable=False,
        default=DeliveryStatus.PENDING.value,
    )

    otp_code_hash = Column(String(255), nullable=True)
    qr_code_hash = Column(String(64), nullable=True)
    codes_issued_at = Column(DateTime, nullable=True)
    codes_expires_at = Column(DateTime, nullable=True)
    secret_version = Column(Integer, nullable=False, default=0)
    verification_method = Column(Enum("otp", "qr", name="delivery_verification_method"), nullable=True)

    assigned_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    assigned_at = Column(DateTime, nullable=True)
    pickup_confirmed_at = Column(DateTime, nullable=True)
    delivery_confirmed_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)
    delivery_notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    order = relationship("Order", back_populates="delivery")
    agent = relationship("User", foreign_keys=[agent_id])


class Payout(Base):
    __tablename__ = "payouts"

    id = Column(Integer, primary_key=True)
    owner_type = Column(Enum(*values(OwnerType), name="payout_owner_type"), nullable=False)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    status = Column(
        Enum(*values(PayoutStatus), name="payout_status"),
        nullable=False,
        default=PayoutStatus.PENDING.value,
    )

    bank_name = Column(String(120), nullable=False)
    account_name = Column(String(200), nullable=False)
    account_number = Column(String(64), nullable=False)

    transaction_reference = Column(String(120), nullable=True)
    payment_proof_url = Column(String(500), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    requested_at = Column(DateTime, default=utcnow, nullable=False)
    approved_at = Column(DateTime, nullable=True)
    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    processed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    allocations = relationship("PayoutAllocation", back_populates="payout", order_by="PayoutAllocation.id")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payouts_amount_positive"),
        # At most one open payout per owner.
        Index(
            "uq_payouts_open_owner",
            "owner_type",
            "owner_id",
            unique=True,
            sqlite_where=text("status IN ('Pending', 'Approved', 'Processing')"),
            postgresql_where=text("status IN ('Pending', 'Approved', 'Processing')"),
        ),
    )


class Earning(Base):
    __tablename__ = "earnings"

    id = Column(Integer, primary_key=True)
    owner_type = Column(Enum(*values(OwnerType), name="earning_owner_type"), nullable=False)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    delivery_id = Column(Integer, ForeignKey("deliveries.id"), nullable=True)

    gross_amount = Column(Numeric(14, 2), nullable=False)
    rate = Column(Numeric(5, 2), nullable=False)
    commission_amount = Column(Numeric(14, 2), nullable=False)
    bonus_amount = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    net_amount = Column(Numeric(14, 2), nullable=False)
    allocated_amount = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    status = Column(
        Enum(*values(EarningStatus), name="earning_status"),
        nullable=False,
        default=EarningStatus.PENDING.value,
    )
    available_date = Column(DateTime, nullable=False)
    payout_id = Column(Integer, ForeignKey("payouts.id"), nullable=True)

    distance_km = Column(Numeric(8, 2), nullable=True)
    base_fee = Column(Numeric(14, 2), nullable=True)
    per_km_rate = Column(Numeric(14, 2), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("owner_type", "owner_id", "order_id", name="uq_earnings_owner_order"),
        CheckConstraint("allocated_amount >= 0", name="ck_earnings_allocated_non_negative"),
        CheckConstraint("allocated_amount <= net_amount", name="ck_earnings_allocated_within_net"),
        Index("ix_earnings_owner_status_date", "owner_type", "owner_id", "status", "available_date"),
    )

    @property
    def remaining_amount(self) -> Decimal:
        return Decimal(self.net_amount or 0) - Decimal(self.allocated_amount or 0)


class PayoutAllocation(Base):
    __tablename__ = "payout_allocations"

    id = Column(Integer, primary_key=True)
    payout_id = Column(Integer, ForeignKey("payouts.id"), nullable=False, index=True)
    earning_id = Column(Integer, ForeignKey("earnings.id"), nullable=False, index=True)
    amount = Column(Numeric(14, 2), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    reversed_at = Column(DateTime, nullable=True)

    payout = relationship("Payout", back_populates="allocations")
    earning = relationship("Earning")

    __table_args__ = (CheckConstraint("amount > 0", name="ck_payout_allocations_amount_positive"),)


class DeliverySetting(Base):
    __tablename__ = "delivery_settings"

    id = Column(Integer, primary_key=True)
    setting_key = Column(String(100), unique=True, nullable=False)
    setting_value = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    updated_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class NotificationEvent(Base):
    __tablename__ = "notification_events"

    id = Column(Integer, primary_key=True)
    event_type = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, nullable=False)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    payload = Column(Text, nullable=True)
    status = Column(Enum("pending", "sent", "failed", name="notification_status"), nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    dispatched_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("ix_notification_events_status_id", "status", "id"),)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(Integer, nullable=False)
    action = Column(String(50), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    event_metadata = Column(Text, nullable=True)

    __table_args__ = (Index("ix_audit_events_entity", "entity_type", "entity_id"),)
