"""
Wealth CRM Booking Models
Availability templates, weekly rules and guest bookings
"""

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Time, Text, ForeignKey, Uuid,
    CheckConstraint, Index, text,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import uuid
from enum import Enum

from ..core.database import Base


class BookingStatus(str, Enum):
    """Booking status enumeration"""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"


class AvailabilityTemplate(Base):
    """A bookable offering with a duration, buffer and weekly rules"""
    __tablename__ = "booking_availabilities"
    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_availability_duration_positive"),
        CheckConstraint("buffer_minutes >= 0", name="ck_availability_buffer_non_negative"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    duration_minutes = Column(Integer, nullable=False, default=30)
    buffer_minutes = Column(Integer, nullable=False, default=0)
    booking_link = Column(String(32), nullable=False, unique=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    timezone = Column(String(64), nullable=False, default="UTC")
    # Bumped by every booking transaction; the row write queues concurrent bookings per template
    booking_sequence = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship("User", backref="booking_availabilities")
    rules = relationship(
        "AvailabilityRule",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="AvailabilityRule.day_of_week",
    )
    bookings = relationship("Booking", back_populates="template")

    def __repr__(self):
        return f"<AvailabilityTemplate(name='{self.name}', link='{self.booking_link}', active={self.is_active})>"


class AvailabilityRule(Base):
    """One weekly recurring open window (0=Sunday..6=Saturday)"""
    __tablename__ = "availability_rules"
    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_rule_day_of_week"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    availability_id = Column(Uuid, ForeignKey("booking_availabilities.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)

    template = relationship("AvailabilityTemplate", back_populates="rules")

    def __repr__(self):
        return f"<AvailabilityRule(day={self.day_of_week}, {self.start_time}-{self.end_time})>"


class Booking(Base):
    """A reservation against an availability template"""
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_booking_interval"),
        # One live booking per template and start time. Cancelled rows free the slot.
        Index(
            "uq_bookings_active_slot",
            "availability_id",
            "start_time",
            unique=True,
            postgresql_where=text("status <> 'CANCELLED'"),
            sqlite_where=text("status <> 'CANCELLED'"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    availability_id = Column(Uuid, ForeignKey("booking_availabilities.id"), nullable=False, index=True)
    contact_id = Column(Uuid, ForeignKey("contacts.id"), index=True)
    guest_name = Column(String(200), nullable=False)
    guest_email = Column(String(255), nullable=False)
    guest_phone = Column(String(30))
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(20), nullable=False, default=BookingStatus.CONFIRMED.value, index=True)
    timezone = Column(String(64))
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    template = relationship("AvailabilityTemplate", back_populates="bookings")
    contact = relationship("Contact", backref="bookings")

    @property
    def is_cancelled(self) -> bool:
        return self.status == BookingStatus.CANCELLED.value

    def __repr__(self):
        return f"<Booking(guest='{self.guest_email}', start={self.start_time}, status='{self.status}')>"
