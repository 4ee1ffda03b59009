from enum import Enum


class OrderStatus(str, Enum):
    PLACED = "Placed"
    APPROVED = "Approved"
    ASSIGNED = "Assigned"
    IN_TRANSIT = "In_Transit"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    FAILED = "Failed"
    REFUNDED = "Refunded"


class DeliveryStatus(str, Enum):
    PENDING = "Pending"
    ASSIGNED = "Assigned"
    IN_TRANSIT = "In_Transit"
    DELIVERED = "Delivered"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class EarningStatus(str, Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    WITHDRAWN = "withdrawn"
    ON_HOLD = "on_hold"


class PayoutStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    REJECTED = "Rejected"


class MovementType(str, Enum):
    SALE = "sale"
    RESTOCK = "restock"
    ADJUSTMENT = "adjustment"
    RETURN = "return"
    RESERVATION = "reservation"
    RESERVATION_RELEASE = "reservation_release"


class ProductStatus(str, Enum):
    PENDING = "Pending"
    LIVE = "Live"
    REJECTED = "Rejected"
    ARCHIVED = "Archived"


class AvailabilityStatus(str, Enum):
    AVAILABLE = "available"
    SOLD = "sold"
    RESERVED = "reserved"
    PENDING_SALE = "pending_sale"
    UNAVAILABLE = "unavailable"


class OwnerType(str, Enum):
    SELLER = "seller"
    AGENT = "agent"


class UserRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    AGENT = "agent"
    ADMIN = "admin"


# Movement types that change stock_quantity. Reservation rows only move reserved_stock.
QUANTITY_MOVEMENT_TYPES = frozenset(
    {MovementType.SALE.value, MovementType.RESTOCK.value, MovementType.ADJUSTMENT.value, MovementType.RETURN.value}
)

ORDER_TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value})
DELIVERY_TERMINAL_STATUSES = frozenset(
    {DeliveryStatus.DELIVERED.value, DeliveryStatus.FAILED.value, DeliveryStatus.CANCELLED.value}
)
PAYOUT_OPEN_STATUSES = frozenset(
    {PayoutStatus.PENDING.value, PayoutStatus.APPROVED.value, PayoutStatus.PROCESSING.value}
)


def values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]
