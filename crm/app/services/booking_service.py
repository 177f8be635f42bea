"""
Wealth CRM Booking Service
Availability templates, public slot lookup and guest bookings
"""

import secrets
import string
from typing import Dict, Any, List, Optional, Sequence, Tuple, Union
from uuid import UUID
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
import structlog

from ..models.booking import AvailabilityTemplate, AvailabilityRule, Booking, BookingStatus
from ..models.contacts import Contact, InvestorType
from ..models.users import User
from ..models.communications import CommunicationType
from ..core.config import settings
from ..core.errors import NotFoundError, InvalidStateError, ConflictError, DeliveryError
from .slot_engine import (
    TimeSlot,
    as_utc,
    find_overlapping_rules,
    find_slot,
    generate_slots,
    list_available_dates,
    template_zone,
)
from .booking_emails import (
    build_guest_confirmation,
    build_host_notification,
    calendar_attachment,
    generate_calendar_invite,
)
from .communication_service import CommunicationService
from .nats_client import publish_event_safely

logger = structlog.get_logger()

LINK_ALPHABET = string.ascii_lowercase + string.digits
LINK_ATTEMPTS = 5

BOOKING_TRANSITIONS: Dict[BookingStatus, frozenset] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.CANCELLED, BookingStatus.NO_SHOW, BookingStatus.COMPLETED}),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
}


def generate_booking_link(length: Optional[int] = None) -> str:
    """Random lowercase alphanumeric public link"""
    length = length or settings.booking_link_length
    return "".join(secrets.choice(LINK_ALPHABET) for _ in range(length))


def rule_to_dict(rule: AvailabilityRule) -> Dict[str, Any]:
    return {
        "id": str(rule.id) if rule.id else None,
        "day_of_week": rule.day_of_week,
        "start_time": rule.start_time.strftime("%H:%M"),
        "end_time": rule.end_time.strftime("%H:%M"),
        "is_available": rule.is_available,
    }


def template_to_dict(template: AvailabilityTemplate, public: bool = False) -> Dict[str, Any]:
    data = {
        "id": str(template.id),
        "name": template.name,
        "description": template.description,
        "duration_minutes": template.duration_minutes,
        "buffer_minutes": template.buffer_minutes,
        "booking_link": template.booking_link,
        "timezone": template.timezone,
        "rules": [rule_to_dict(rule) for rule in template.rules],
    }
    if public:
        host = template.user
        data["host"] = {"name": host.full_name} if host else None
    else:
        data["user_id"] = str(template.user_id)
        data["is_active"] = template.is_active
    return data


def booking_to_dict(booking: Booking) -> Dict[str, Any]:
    return {
        "id": str(booking.id),
        "availability_id": str(booking.availability_id),
        "contact_id": str(booking.contact_id) if booking.contact_id else None,
        "guest_name": booking.guest_name,
        "guest_email": booking.guest_email,
        "guest_phone": booking.guest_phone,
        "start_time": as_utc(booking.start_time).isoformat(),
        "end_time": as_utc(booking.end_time).isoformat(),
        "status": booking.status,
        "timezone": booking.timezone,
        "notes": booking.notes,
    }


class BookingService:
    """Service for availability templates and public bookings"""

    def __init__(self, db: AsyncSession, notifier=None):
        self.db = db
        self.notifier = notifier or CommunicationService(db)

    # Owner template management

    async def create_template(
        self,
        owner_id: UUID,
        name: str,
        rules: Sequence[Dict[str, Any]],
        duration_minutes: int = 30,
        buffer_minutes: int = 0,
        timezone_name: str = "UTC",
        description: Optional[str] = None,
        is_active: bool = True
    ) -> AvailabilityTemplate:
        """Create a template with a fresh public link and its weekly rules"""

        if not await self.db.get(User, owner_id):
            raise NotFoundError(f"User {owner_id} not found")

        new_rules = [self._build_rule(rule) for rule in rules]
        self._validate_template(duration_minutes, buffer_minutes, timezone_name, new_rules)

        template = AvailabilityTemplate(
            user_id=owner_id,
            name=name,
            description=description,
            duration_minutes=duration_minutes,
            buffer_minutes=buffer_minutes,
            timezone=timezone_name,
            is_active=is_active,
            booking_link=await self._unique_booking_link(),
            rules=new_rules,
        )
        self.db.add(template)
        await self.db.commit()

        logger.info(
            "Availability template created",
            template_id=str(template.id),
            owner_id=str(owner_id),
            booking_link=template.booking_link,
            rule_count=len(new_rules)
        )
        return await self.get_template(owner_id, template.id)

    async def update_template(
        self,
        owner_id: UUID,
        template_id: UUID,
        rules: Optional[Sequence[Dict[str, Any]]] = None,
        **changes
    ) -> AvailabilityTemplate:
        """
        Update template fields. When ``rules`` is given the whole rule set is
        replaced; rules are never merged.
        """
        editable = {"name", "description", "duration_minutes", "buffer_minutes", "timezone", "is_active"}
        unknown = set(changes) - editable
        if unknown:
            raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")

        template = await self.get_template(owner_id, template_id)

        new_rules = [self._build_rule(rule) for rule in rules] if rules is not None else None
        self._validate_template(
            changes.get("duration_minutes", template.duration_minutes),
            changes.get("buffer_minutes", template.buffer_minutes),
            changes.get("timezone", template.timezone),
            new_rules if new_rules is not None else template.rules,
        )

        for field_name, value in changes.items():
            setattr(template, field_name, value)
        if new_rules is not None:
            template.rules = new_rules
        await self.db.commit()

        logger.info(
            "Availability template updated",
            template_id=str(template_id),
            fields=sorted(changes),
            rules_replaced=new_rules is not None
        )
        return await self.get_template(owner_id, template_id)

    async def set_template_active(self, owner_id: UUID, template_id: UUID, is_active: bool) -> AvailabilityTemplate:
        template = await self.get_template(owner_id, template_id)
        template.is_active = is_active
        await self.db.commit()

        logger.info("Availability template toggled", template_id=str(template_id), is_active=is_active)
        return await self.get_template(owner_id, template_id)

    async def get_template(self, owner_id: UUID, template_id: UUID) -> AvailabilityTemplate:
        result = await self.db.execute(
            self._template_query()
            .where(and_(AvailabilityTemplate.id == template_id, AvailabilityTemplate.user_id == owner_id))
            .execution_options(populate_existing=True)
        )
        template = result.scalar_one_or_none()
        if not template:
            raise NotFoundError(f"Availability template {template_id} not found")
        return template

    async def list_templates(self, owner_id: UUID) -> List[AvailabilityTemplate]:
        result = await self.db.execute(
            self._template_query()
            .where(AvailabilityTemplate.user_id == owner_id)
            .order_by(AvailabilityTemplate.created_at.desc())
        )
        return list(result.scalars().all())

    # Public booking surface

    async def get_public_template(self, booking_link: str) -> AvailabilityTemplate:
        """Active template for a public link; inactive counts as missing"""
        result = await self.db.execute(
            self._template_query()
            .where(and_(
                AvailabilityTemplate.booking_link == booking_link,
                AvailabilityTemplate.is_active.is_(True)
            ))
            .execution_options(populate_existing=True)
        )
        template = result.scalar_one_or_none()
        if not template:
            raise NotFoundError(f"Booking page {booking_link} not found")
        return template

    async def get_available_dates(
        self,
        booking_link: str,
        today: Optional[date] = None,
        look_ahead_days: Optional[int] = None
    ) -> Tuple[AvailabilityTemplate, List[date]]:
        template = await self.get_public_template(booking_link)
        days = look_ahead_days if look_ahead_days is not None else settings.booking_lookahead_days
        return template, list_available_dates(template, days, today)

    async def get_slots(
        self,
        booking_link: str,
        day: date,
        now: Optional[datetime] = None
    ) -> Tuple[AvailabilityTemplate, List[TimeSlot]]:
        template = await self.get_public_template(booking_link)
        existing = await self._bookings_around(template, day)
        return template, generate_slots(template, day, existing, now)

    async def create_booking(
        self,
        booking_link: str,
        guest_name: str,
        guest_email: str,
        start_time: datetime,
        end_time: datetime,
        guest_phone: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Booking:
        """
        Book one generated slot for a guest.

        The requested interval must equal an available slot of the template.
        Concurrent requests for one template are serialized on the template
        row and the overlap check is repeated inside that transaction, so of
        two clashing requests the later one gets ConflictError.
        """
        template = await self.get_public_template(booking_link)
        zone = template_zone(template)
        now_utc = as_utc(now) if now is not None else datetime.now(timezone.utc)

        start_utc, end_utc = as_utc(start_time), as_utc(end_time)
        if end_utc <= start_utc:
            raise ValueError("Booking end must be after its start")

        local_day = start_utc.astimezone(zone).date()
        existing = await self._bookings_around(template, local_day)
        slot = find_slot(generate_slots(template, local_day, existing, now_utc), start_utc, end_utc)

        if slot is None:
            raise ValueError("Requested time does not match an offered slot")
        if not slot.available:
            if start_utc <= now_utc:
                raise ValueError("Requested slot is in the past")
            raise ConflictError("Time slot already booked")

        contact = await self._find_or_create_contact(guest_name, guest_email, guest_phone)
        if contact is None:
            # Contact race rolled back the session; reload the template
            template = await self.get_public_template(booking_link)
            contact = await self._find_contact(guest_email)

        template_id = template.id
        await self._lock_template(template_id)
        if await self._has_overlapping_booking(template_id, start_utc, end_utc):
            await self.db.rollback()
            logger.info(
                "Booking lost slot race",
                template_id=str(template_id),
                start_time=start_utc.isoformat(),
                guest_email=guest_email
            )
            raise ConflictError("Time slot already booked")

        booking = Booking(
            availability_id=template_id,
            contact_id=contact.id,
            guest_name=guest_name,
            guest_email=guest_email,
            guest_phone=guest_phone,
            start_time=start_utc,
            end_time=end_utc,
            status=(BookingStatus.CONFIRMED if settings.booking_auto_confirm else BookingStatus.PENDING).value,
            timezone=template.timezone,
            notes=notes,
        )
        self.db.add(booking)

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(
                "Booking lost slot race",
                template_id=str(template_id),
                start_time=start_utc.isoformat(),
                guest_email=guest_email
            )
            raise ConflictError("Time slot already booked") from None

        logger.info(
            "Booking created",
            booking_id=str(booking.id),
            template_id=str(template_id),
            contact_id=str(contact.id),
            start_time=start_utc.isoformat(),
            status=booking.status
        )

        await self._send_confirmations(booking, template, contact)
        await publish_event_safely("bookings.created", {
            "booking_id": str(booking.id),
            "availability_id": str(template_id),
            "contact_id": str(contact.id),
            "start_time": start_utc.isoformat(),
            "end_time": end_utc.isoformat(),
            "status": booking.status,
        })
        return booking

    # Staff booking operations

    async def update_booking_status(
        self,
        owner_id: UUID,
        booking_id: UUID,
        new_status: Union[BookingStatus, str]
    ) -> Booking:
        try:
            target = BookingStatus(new_status)
        except ValueError:
            raise ValueError(f"Unknown booking status: {new_status}") from None

        result = await self.db.execute(
            select(Booking)
            .join(AvailabilityTemplate, Booking.availability_id == AvailabilityTemplate.id)
            .where(and_(Booking.id == booking_id, AvailabilityTemplate.user_id == owner_id))
        )
        booking = result.scalar_one_or_none()
        if not booking:
            raise NotFoundError(f"Booking {booking_id} not found")

        current = BookingStatus(booking.status)
        if target not in BOOKING_TRANSITIONS[current]:
            raise InvalidStateError(
                f"Booking cannot move from {current.value} to {target.value}",
                current={"status": current.value},
                required={"status": sorted(s.value for s in BookingStatus if target in BOOKING_TRANSITIONS[s])},
            )

        booking.status = target.value
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError("Another booking already holds this slot") from None

        logger.info("Booking status updated", booking_id=str(booking_id), old_status=current.value, new_status=target.value)
        await publish_event_safely("bookings.status_changed", {
            "booking_id": str(booking_id),
            "old_status": current.value,
            "new_status": target.value,
        })
        return booking

    async def complete_past_bookings(self, now: Optional[datetime] = None) -> int:
        """Mark CONFIRMED bookings that have ended as COMPLETED"""
        now_utc = as_utc(now) if now is not None else datetime.now(timezone.utc)

        result = await self.db.execute(
            update(Booking)
            .where(and_(
                Booking.status == BookingStatus.CONFIRMED.value,
                Booking.end_time <= now_utc
            ))
            .values(status=BookingStatus.COMPLETED.value)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        completed = result.rowcount or 0
        logger.info("Past bookings completed", count=completed, cutoff=now_utc.isoformat())
        if completed:
            await publish_event_safely("bookings.completed", {"count": completed, "cutoff": now_utc.isoformat()})
        return completed

    async def list_contact_bookings(self, owner_id: UUID, contact_id: UUID) -> List[Dict[str, Any]]:
        """A contact's bookings on the owner's templates, newest first"""
        result = await self.db.execute(
            select(Booking, AvailabilityTemplate.name)
            .join(AvailabilityTemplate, Booking.availability_id == AvailabilityTemplate.id)
            .where(and_(Booking.contact_id == contact_id, AvailabilityTemplate.user_id == owner_id))
            .order_by(Booking.start_time.desc())
        )
        return [
            {**booking_to_dict(booking), "availability_name": template_name}
            for booking, template_name in result.all()
        ]

    # Helpers

    async def _bookings_around(self, template: AvailabilityTemplate, day: date) -> List[Booking]:
        """Non-cancelled bookings that could overlap slots on ``day``"""
        zone = template_zone(template)
        window_start = as_utc(datetime.combine(day, time.min, tzinfo=zone) - timedelta(days=1))
        window_end = as_utc(datetime.combine(day, time.min, tzinfo=zone) + timedelta(days=2))

        result = await self.db.execute(
            select(Booking).where(and_(
                Booking.availability_id == template.id,
                Booking.status != BookingStatus.CANCELLED.value,
                Booking.start_time < window_end,
                Booking.end_time > window_start
            ))
        )
        return list(result.scalars().all())

    async def _lock_template(self, template_id: UUID):
        """Write the template row; other booking transactions for it wait until commit"""
        await self.db.execute(
            update(AvailabilityTemplate)
            .where(AvailabilityTemplate.id == template_id)
            .values(booking_sequence=AvailabilityTemplate.booking_sequence + 1)
            .execution_options(synchronize_session=False)
        )

    async def _has_overlapping_booking(self, template_id: UUID, start: datetime, end: datetime) -> bool:
        result = await self.db.execute(
            select(Booking.id).where(and_(
                Booking.availability_id == template_id,
                Booking.status != BookingStatus.CANCELLED.value,
                Booking.start_time < end,
                Booking.end_time > start
            )).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def _find_contact(self, email: str) -> Optional[Contact]:
        result = await self.db.execute(select(Contact).where(Contact.email == email))
        return result.scalar_one_or_none()

    async def _find_or_create_contact(self, name: str, email: str, phone: Optional[str]) -> Optional[Contact]:
        """
        Match the guest to a contact by email or create one.

        Returns None when a concurrent request created the same contact;
        the session has then been rolled back.
        """
        contact = await self._find_contact(email)
        if contact:
            return contact

        contact = Contact(
            full_name=name,
            email=email,
            phone_number=phone,
            investor_type=InvestorType.INDIVIDUAL.value,
        )
        self.db.add(contact)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            return None

        logger.info("Contact created from booking", contact_id=str(contact.id), email=email)
        return contact

    async def _send_confirmations(self, booking: Booking, template: AvailabilityTemplate, contact: Contact):
        """Guest and host emails with a calendar invite; failures are logged only"""
        host = template.user
        attachment = calendar_attachment(generate_calendar_invite(booking, template, host))

        messages = [(booking.guest_email, build_guest_confirmation(booking, template, host),
                     CommunicationType.BOOKING_CONFIRMATION)]
        if host is not None:
            messages.append((host.email, build_host_notification(booking, template, contact),
                             CommunicationType.BOOKING_HOST_NOTICE))

        for recipient, (subject, content), communication_type in messages:
            try:
                await self.notifier.send_email(
                    to_email=recipient,
                    subject=subject,
                    content=content,
                    communication_type=communication_type,
                    contact_id=contact.id if communication_type == CommunicationType.BOOKING_CONFIRMATION else None,
                    booking_id=booking.id,
                    attachments=[attachment],
                )
            except DeliveryError as e:
                logger.warning(
                    "Booking confirmation not sent",
                    booking_id=str(booking.id),
                    recipient=recipient,
                    error=e.message
                )

    async def _unique_booking_link(self) -> str:
        for _ in range(LINK_ATTEMPTS):
            link = generate_booking_link()
            result = await self.db.execute(
                select(AvailabilityTemplate.id).where(AvailabilityTemplate.booking_link == link)
            )
            if result.scalar_one_or_none() is None:
                return link
        raise RuntimeError("Could not generate a unique booking link")

    @staticmethod
    def _template_query():
        return select(AvailabilityTemplate).options(
            selectinload(AvailabilityTemplate.rules),
            selectinload(AvailabilityTemplate.user)
        )

    @staticmethod
    def _build_rule(rule: Dict[str, Any]) -> AvailabilityRule:
        return AvailabilityRule(
            day_of_week=rule["day_of_week"],
            start_time=rule["start_time"],
            end_time=rule["end_time"],
            is_available=rule.get("is_available", True),
        )

    @staticmethod
    def _validate_template(
        duration_minutes: int,
        buffer_minutes: int,
        timezone_name: str,
        rules: Sequence[AvailabilityRule]
    ):
        if duration_minutes is None or duration_minutes <= 0:
            raise ValueError("duration_minutes must be greater than zero")
        if buffer_minutes is None or buffer_minutes < 0:
            raise ValueError("buffer_minutes must not be negative")
        try:
            ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {timezone_name!r}") from None

        for rule in rules:
            if not 0 <= rule.day_of_week <= 6:
                raise ValueError(f"day_of_week must be between 0 and 6, got {rule.day_of_week}")
            if rule.is_available and rule.start_time >= rule.end_time:
                raise ValueError(
                    f"Rule on day {rule.day_of_week} must start before it ends "
                    f"({rule.start_time:%H:%M} >= {rule.end_time:%H:%M})"
                )

        for first, second in find_overlapping_rules(rules):
            logger.warning(
                "Overlapping availability rules",
                day_of_week=first.day_of_week,
                first=f"{first.start_time:%H:%M}-{first.end_time:%H:%M}",
                second=f"{second.start_time:%H:%M}-{second.end_time:%H:%M}"
            )
