import enum
import uuid
from sqlalchemy import (
    JSON, TIMESTAMP, Boolean, CheckConstraint, Column, Date, ForeignKey,
    Integer, String, Text, Uuid, func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declared_attr
from checkout.db import Base

Payload = JSON().with_variant(JSONB(), "postgresql")


class ReservationKind(str, enum.Enum):
    BOOKING = "booking"
    TICKET_ORDER = "ticket_order"
    LEAD_UNLOCK = "lead_unlock"


class ReservationStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


class ResourceKind(str, enum.Enum):
    TIME_SLOT = "time_slot"
    TICKET_TIER = "ticket_tier"
    LEAD = "lead"


# Catalog (written by vendor flows, read here)

class Restaurant(Base):
    __tablename__ = "restaurants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    vendor_id = Column(Uuid, nullable=False)
    name = Column(String(200), nullable=False)
    is_published = Column(Boolean, nullable=False, default=False)

class RestaurantTimeSlot(Base):
    __tablename__ = "restaurant_time_slots"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    restaurant_id = Column(Uuid, ForeignKey("restaurants.id"), nullable=False)
    day_of_week = Column(Integer, nullable=False)  # 0=Sunday
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    capacity = Column(Integer, nullable=False)

class ClubEvent(Base):
    __tablename__ = "club_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    vendor_id = Column(Uuid, nullable=False)
    name = Column(String(200), nullable=False)
    event_date = Column(TIMESTAMP(timezone=True), nullable=False)
    is_published = Column(Boolean, nullable=False, default=False)

class TicketTier(Base):
    __tablename__ = "ticket_tiers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id = Column(Uuid, ForeignKey("club_events.id"), nullable=False)
    name = Column(String(100), nullable=False)
    price = Column(Integer, nullable=False)
    capacity = Column(Integer, nullable=False)

class Lead(Base):
    __tablename__ = "leads"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    vendor_id = Column(Uuid, nullable=True)
    customer_name = Column(String(200), nullable=False)
    status = Column(String(20), nullable=False, default="new")
    max_unlocks = Column(Integer, nullable=True)


# Inventory ledger

class InventoryUnit(Base):
    __tablename__ = "inventory_units"
    __table_args__ = (
        CheckConstraint(
            "committed >= 0 AND committed <= capacity",
            name="ck_inventory_units_committed_within_capacity",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    unit_key = Column(String(200), nullable=False, unique=True)
    resource_kind = Column(String(20), nullable=False)
    resource_id = Column(Uuid, nullable=False, index=True)
    service_date = Column(Date, nullable=True)
    capacity = Column(Integer, nullable=False)
    committed = Column(Integer, nullable=False, default=0)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), onupdate=func.now())

class InventoryHold(Base):
    __tablename__ = "inventory_holds"

    # Same id as the reservation that consumes the inventory.
    id          = Column(Uuid, primary_key=True)
    user_id     = Column(Uuid, nullable=False)
    created_at  = Column(TIMESTAMP(timezone=True), server_default=func.now())
    released_at = Column(TIMESTAMP(timezone=True), nullable=True)
    captured_at = Column(TIMESTAMP(timezone=True), nullable=True)

class InventoryHoldLine(Base):
    __tablename__ = "inventory_hold_lines"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_inventory_hold_lines_quantity_positive"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    hold_id = Column(Uuid, ForeignKey("inventory_holds.id"), nullable=False, index=True)
    inventory_unit_id = Column(Uuid, ForeignKey("inventory_units.id"), nullable=False)
    quantity = Column(Integer, nullable=False)


# Payments and reservations

class Payment(Base):
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    provider = Column(String(20), nullable=False)
    provider_order_id = Column(String(64), nullable=False, unique=True)
    provider_payment_id = Column(String(64), nullable=True)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    user_id = Column(Uuid, nullable=False, index=True)
    reservation_kind = Column(String(20), nullable=False)
    reservation_id = Column(Uuid, nullable=False)
    amount_refunded = Column(Integer, nullable=False, default=0)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), onupdate=func.now())

class ReservationMixin:
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    vendor_id = Column(Uuid, nullable=True)
    status = Column(String(20), nullable=False, default=ReservationStatus.PENDING.value)
    amount = Column(Integer, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), onupdate=func.now())

    @declared_attr
    def payment_id(cls):
        return Column(Uuid, ForeignKey("payments.id"), nullable=False, unique=True)

class Booking(ReservationMixin, Base):
    __tablename__ = "bookings"
    kind = ReservationKind.BOOKING

    restaurant_id = Column(Uuid, ForeignKey("restaurants.id"), nullable=False)
    slot_id = Column(Uuid, ForeignKey("restaurant_time_slots.id"), nullable=False)
    booking_date = Column(Date, nullable=False)
    guest_count = Column(Integer, nullable=False)

class TicketOrder(ReservationMixin, Base):
    __tablename__ = "ticket_orders"
    kind = ReservationKind.TICKET_ORDER

    event_id = Column(Uuid, ForeignKey("club_events.id"), nullable=False)

class LeadUnlock(ReservationMixin, Base):
    __tablename__ = "lead_unlocks"
    kind = ReservationKind.LEAD_UNLOCK

    lead_id = Column(Uuid, ForeignKey("leads.id"), nullable=False, index=True)

RESERVATION_MODELS = {
    ReservationKind.BOOKING: Booking,
    ReservationKind.TICKET_ORDER: TicketOrder,
    ReservationKind.LEAD_UNLOCK: LeadUnlock,
}

class ReservationItem(Base):
    __tablename__ = "reservation_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    reservation_kind = Column(String(20), nullable=False)
    reservation_id = Column(Uuid, nullable=False, index=True)
    inventory_unit_id = Column(Uuid, ForeignKey("inventory_units.id"), nullable=False)
    resource_id = Column(Uuid, nullable=False)
    quantity = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)

class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("ticket_orders.id"), nullable=False, index=True)
    ticket_tier_id = Column(Uuid, ForeignKey("ticket_tiers.id"), nullable=False)
    qr_hash = Column(String(64), nullable=False, unique=True)
    is_scanned = Column(Boolean, nullable=False, default=False)
    is_void = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


# Webhook ledger, outbox, audit

class WebhookEvent(Base):
    __tablename__ = "payment_webhook_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    provider = Column(String(20), nullable=False)
    event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(100), nullable=True)
    payload = Column(Payload, nullable=False)
    processed = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    aggregate_id = Column(Uuid, nullable=False)
    event_type = Column(String(50), nullable=False)
    payload = Column(Payload, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    published_at = Column(TIMESTAMP(timezone=True), nullable=True)

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    actor_id = Column(Uuid, nullable=True)
    action = Column(String(30), nullable=False)
    target_type = Column(String(30), nullable=False)
    target_id = Column(String(64), nullable=False)
    payload = Column(Payload, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
