"""
Wealth CRM Booking Emails
Confirmation email bodies and iCalendar invites for new bookings
"""

import base64
from datetime import datetime, timezone
from html import escape
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse
from zoneinfo import ZoneInfo

from ..core.config import settings
from .slot_engine import as_utc


def _ics_timestamp(value: datetime) -> str:
    return as_utc(value).strftime("%Y%m%dT%H%M%SZ")


def _ics_text(value: str) -> str:
    """Escape a TEXT property value (RFC 5545 section 3.3.11)"""
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def generate_calendar_invite(booking, template, host, now: Optional[datetime] = None) -> str:
    """VCALENDAR text with a single VEVENT for the booking"""
    now = now or datetime.now(timezone.utc)
    domain = urlparse(settings.app_url).hostname or "localhost"
    host_name = host.full_name if host else "Host"
    host_email = host.email if host else settings.email_from

    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Wealth CRM//Booking//EN",
        "CALSCALE:GREGORIAN",
        "METHOD:REQUEST",
        "BEGIN:VEVENT",
        f"UID:booking-{booking.id}@{domain}",
        f"DTSTAMP:{_ics_timestamp(now)}",
        f"DTSTART:{_ics_timestamp(booking.start_time)}",
        f"DTEND:{_ics_timestamp(booking.end_time)}",
        f"SUMMARY:{_ics_text(template.name)}",
        f"DESCRIPTION:{_ics_text(template.description or 'Meeting scheduled via booking system')}",
        "LOCATION:Online Meeting",
        f"ORGANIZER;CN={_ics_text(host_name)}:mailto:{host_email}",
        f"ATTENDEE;ROLE=REQ-PARTICIPANT;PARTSTAT=NEEDS-ACTION;RSVP=TRUE;"
        f"CN={_ics_text(booking.guest_name)}:mailto:{booking.guest_email}",
        "STATUS:CONFIRMED" if booking.status == "CONFIRMED" else "STATUS:TENTATIVE",
        "SEQUENCE:0",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(lines) + "\r\n"


def calendar_attachment(invite: str) -> Dict[str, str]:
    return {
        "filename": "invite.ics",
        "content_type": "text/calendar; method=REQUEST",
        "content": base64.b64encode(invite.encode("utf-8")).decode("ascii"),
    }


def _local_times(booking, template) -> Tuple[str, str]:
    zone = ZoneInfo(booking.timezone or template.timezone or "UTC")
    start = as_utc(booking.start_time).astimezone(zone)
    end = as_utc(booking.end_time).astimezone(zone)
    return start.strftime("%A, %d %B %Y"), f"{start:%H:%M} - {end:%H:%M}"


def _details_block(booking, template) -> str:
    day, times = _local_times(booking, template)
    return f"""
<h4>Meeting Details</h4>
<p><strong>Date:</strong> {day}</p>
<p><strong>Time:</strong> {times}</p>
<p><strong>Duration:</strong> {template.duration_minutes} minutes</p>
<p><strong>Timezone:</strong> {escape(booking.timezone or template.timezone)}</p>"""


def build_guest_confirmation(booking, template, host) -> Tuple[str, str]:
    """Subject and HTML body sent to the guest"""
    host_name = escape(host.full_name) if host else "our team"
    notes = f"<h4>Notes</h4><p>{escape(booking.notes)}</p>" if booking.notes else ""
    heading = "Meeting Confirmed" if booking.status == "CONFIRMED" else "Meeting Requested"

    subject = f"{heading}: {template.name}"
    content = f"""<html><body>
<h2>{heading}</h2>
<h3>{escape(template.name)}</h3>
<p>with {host_name}</p>
{_details_block(booking, template)}
{notes}
<p>The calendar invite is attached.</p>
<p>This is an automated confirmation for your meeting. If you need to reschedule or cancel, please reply to this email.</p>
</body></html>"""
    return subject, content


def build_host_notification(booking, template, contact=None) -> Tuple[str, str]:
    """Subject and HTML body sent to the template owner"""
    phone = f"<p><strong>Phone:</strong> {escape(booking.guest_phone)}</p>" if booking.guest_phone else ""
    crm_contact = f"<p><strong>CRM Contact:</strong> {escape(contact.full_name)}</p>" if contact else ""
    notes = f"<h4>Guest Notes</h4><p>{escape(booking.notes)}</p>" if booking.notes else ""

    subject = f"New Booking: {template.name} with {booking.guest_name}"
    content = f"""<html><body>
<h2>New Meeting Booking</h2>
<h3>{escape(template.name)}</h3>
<h4>Guest Information</h4>
<p><strong>Name:</strong> {escape(booking.guest_name)}</p>
<p><strong>Email:</strong> {escape(booking.guest_email)}</p>
{phone}
{crm_contact}
{_details_block(booking, template)}
{notes}
<p>This meeting has been added to your booking system.</p>
</body></html>"""
    return subject, content
