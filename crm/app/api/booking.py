"""
Wealth CRM Booking API Endpoints
Public booking pages and owner availability management
"""

from typing import List, Optional
from uuid import UUID
from datetime import date, datetime, time
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, EmailStr, Field
import structlog

from ..core.database import get_db
from ..core.errors import CRMError, to_http_exception
from ..models.booking import BookingStatus
from ..services.booking_service import BookingService, booking_to_dict, template_to_dict
from .dependencies import get_notifier

logger = structlog.get_logger()
router = APIRouter(prefix="/booking", tags=["booking"])


class AvailabilityRuleRequest(BaseModel):
    """Weekly window, day_of_week 0=Sunday..6=Saturday"""
    day_of_week: int = Field(..., ge=0, le=6)
    start_time: time
    end_time: time
    is_available: bool = True


class CreateAvailabilityRequest(BaseModel):
    """Request model for creating an availability template"""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    duration_minutes: int = Field(30, gt=0, le=24 * 60)
    buffer_minutes: int = Field(0, ge=0, le=24 * 60)
    timezone: str = "UTC"
    is_active: bool = True
    rules: List[AvailabilityRuleRequest] = Field(default_factory=list)


class UpdateAvailabilityRequest(BaseModel):
    """Full update; the rule list replaces the stored rules"""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    duration_minutes: int = Field(..., gt=0, le=24 * 60)
    buffer_minutes: int = Field(0, ge=0, le=24 * 60)
    timezone: str = "UTC"
    is_active: bool = True
    rules: List[AvailabilityRuleRequest]


class ToggleAvailabilityRequest(BaseModel):
    """Request model for activating or deactivating a template"""
    is_active: bool


class CreateBookingRequest(BaseModel):
    """Guest booking request from the public page"""
    guest_name: str = Field(..., min_length=1, max_length=200)
    guest_email: EmailStr
    guest_phone: Optional[str] = Field(None, max_length=30)
    start_time: datetime
    end_time: datetime
    notes: Optional[str] = Field(None, max_length=2000)


class UpdateBookingStatusRequest(BaseModel):
    """Staff status change for a booking"""
    status: BookingStatus


def _bad_request(e: ValueError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# Public booking surface

@router.get("/public/{booking_link}")
async def get_public_availability(
    booking_link: str,
    db: AsyncSession = Depends(get_db)
):
    """Public booking page details for an active template"""
    try:
        template = await BookingService(db).get_public_template(booking_link)
        return {"status": "success", "data": template_to_dict(template, public=True)}

    except CRMError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error("Public availability retrieval failed", booking_link=booking_link, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get availability"
        )


@router.get("/public/{booking_link}/dates")
async def get_available_dates(
    booking_link: str,
    days: Optional[int] = Query(None, ge=1, le=90, description="Look-ahead window in days"),
    db: AsyncSession = Depends(get_db)
):
    """Dates in the look-ahead window with at least one open rule"""
    try:
        template, dates = await BookingService(db).get_available_dates(booking_link, look_ahead_days=days)
        return {
            "status": "success",
            "data": {
                "timezone": template.timezone,
                "dates": [day.isoformat() for day in dates]
            }
        }

    except CRMError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise _bad_request(e)
    except Exception as e:
        logger.error("Available dates retrieval failed", booking_link=booking_link, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get available dates"
        )


@router.get("/public/{booking_link}/slots")
async def get_slots(
    booking_link: str,
    day: date = Query(..., alias="date", description="Day to list slots for (YYYY-MM-DD)"),
    db: AsyncSession = Depends(get_db)
):
    """All candidate slots for a day, each flagged available or not"""
    try:
        template, slots = await BookingService(db).get_slots(booking_link, day)
        return {
            "status": "success",
            "data": {
                "date": day.isoformat(),
                "timezone": template.timezone,
                "duration_minutes": template.duration_minutes,
                "slots": [slot.to_dict() for slot in slots]
            }
        }

    except CRMError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise _bad_request(e)
    except Exception as e:
        logger.error("Slot retrieval failed", booking_link=booking_link, date=str(day), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get slots"
        )


@router.post("/public/{booking_link}/book", status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_link: str,
    request: CreateBookingRequest,
    db: AsyncSession = Depends(get_db),
    notifier=Depends(get_notifier)
):
    """Book an offered slot"""
    try:
        booking = await BookingService(db, notifier=notifier).create_booking(
            booking_link,
            guest_name=request.guest_name,
            guest_email=request.guest_email,
            guest_phone=request.guest_phone,
            start_time=request.start_time,
            end_time=request.end_time,
            notes=request.notes
        )
        return {
            "status": "success",
            "message": "Booking confirmed" if booking.status == BookingStatus.CONFIRMED.value else "Booking requested",
            "data": booking_to_dict(booking)
        }

    except CRMError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise _bad_request(e)
    except Exception as e:
        logger.error("Booking creation failed", booking_link=booking_link, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create booking"
        )


# Owner template management

@router.get("/availability")
async def list_availability(
    user_id: UUID = Query(..., description="Template owner"),
    db: AsyncSession = Depends(get_db)
):
    """List the owner's availability templates"""
    try:
        templates = await BookingService(db).list_templates(user_id)
        return {
            "status": "success",
            "data": [template_to_dict(template) for template in templates]
        }

    except Exception as e:
        logger.error("Availability listing failed", user_id=str(user_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to list availability"
        )


@router.post("/availability", status_code=status.HTTP_201_CREATED)
async def create_availability(
    request: CreateAvailabilityRequest,
    user_id: UUID = Query(..., description="Template owner"),
    db: AsyncSession = Depends(get_db)
):
    """Create an availability template with its weekly rules"""
    try:
        template = await BookingService(db).create_template(
            user_id,
            name=request.name,
            description=request.description,
            duration_minutes=request.duration_minutes,
            buffer_minutes=request.buffer_minutes,
            timezone_name=request.timezone,
            is_active=request.is_active,
            rules=[rule.model_dump() for rule in request.rules]
        )
        return {
            "status": "success",
            "message": "Availability created",
            "data": template_to_dict(template)
        }

    except CRMError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise _bad_request(e)
    except Exception as e:
        logger.error("Availability creation failed", user_id=str(user_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create availability"
        )


@router.get("/availability/{availability_id}")
async def get_availability(
    availability_id: UUID,
    user_id: UUID = Query(..., description="Template owner"),
    db: AsyncSession = Depends(get_db)
):
    """Get one of the owner's templates"""
    try:
        template = await BookingService(db).get_template(user_id, availability_id)
        return {"status": "success", "data": template_to_dict(template)}

    except CRMError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error("Availability retrieval failed", availability_id=str(availability_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get availability"
        )


@router.put("/availability/{availability_id}")
async def update_availability(
    availability_id: UUID,
    request: UpdateAvailabilityRequest,
    user_id: UUID = Query(..., description="Template owner"),
    db: AsyncSession = Depends(get_db)
):
    """Replace template fields and its full rule set"""
    try:
        changes = request.model_dump(exclude={"rules"})
        template = await BookingService(db).update_template(
            user_id,
            availability_id,
            rules=[rule.model_dump() for rule in request.rules],
            **changes
        )
        return {
            "status": "success",
            "message": "Availability updated",
            "data": template_to_dict(template)
        }

    except CRMError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise _bad_request(e)
    except Exception as e:
        logger.error("Availability update failed", availability_id=str(availability_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update availability"
        )


@router.patch("/availability/{availability_id}")
async def toggle_availability(
    availability_id: UUID,
    request: ToggleAvailabilityRequest,
    user_id: UUID = Query(..., description="Template owner"),
    db: AsyncSession = Depends(get_db)
):
    """Activate or deactivate a template's public link"""
    try:
        template = await BookingService(db).set_template_active(user_id, availability_id, request.is_active)
        return {
            "status": "success",
            "message": "Availability activated" if template.is_active else "Availability deactivated",
            "data": template_to_dict(template)
        }

    except CRMError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error("Availability toggle failed", availability_id=str(availability_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update availability"
        )


# Staff booking operations

@router.patch("/bookings/{booking_id}/status")
async def update_booking_status(
    booking_id: UUID,
    request: UpdateBookingStatusRequest,
    user_id: UUID = Query(..., description="Template owner"),
    db: AsyncSession = Depends(get_db)
):
    """Confirm, cancel, complete or mark a booking as no-show"""
    try:
        booking = await BookingService(db).update_booking_status(user_id, booking_id, request.status)
        return {
            "status": "success",
            "message": f"Booking {booking.status.lower()}",
            "data": booking_to_dict(booking)
        }

    except CRMError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise _bad_request(e)
    except Exception as e:
        logger.error("Booking status update failed", booking_id=str(booking_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update booking"
        )


@router.post("/bookings/complete-past")
async def complete_past_bookings(
    db: AsyncSession = Depends(get_db)
):
    """Mark confirmed bookings that have ended as completed"""
    try:
        completed = await BookingService(db).complete_past_bookings()
        return {
            "status": "success",
            "message": f"{completed} booking(s) completed",
            "data": {"completed": completed}
        }

    except Exception as e:
        logger.error("Booking completion sweep failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to complete bookings"
        )


@router.get("/contacts/{contact_id}/bookings")
async def list_contact_bookings(
    contact_id: UUID,
    user_id: UUID = Query(..., description="Template owner"),
    db: AsyncSession = Depends(get_db)
):
    """A contact's bookings on the owner's templates"""
    try:
        bookings = await BookingService(db).list_contact_bookings(user_id, contact_id)
        return {"status": "success", "data": bookings}

    except Exception as e:
        logger.error("Contact bookings retrieval failed", contact_id=str(contact_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get bookings"
        )
