# calendar_service.py - Delivery calendar availability
# Dates and time slots published by the shop, filtered per delivery zone

import logging
import re
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, List, Optional

from pydantic import BaseModel, Field

from zone_service import ZoneStore

logger = logging.getLogger("Imperatore.Calendar")

CALENDAR_ERROR_MESSAGE = "Errore nel caricamento del calendario"

# ============================================================================
# DATA MODELS
# ============================================================================

class CalendarDay(BaseModel):
    date: str  # "2025-06-09"
    day: str = ""  # "Lunedì", "Martedì", ...
    slots: List[str] = Field(default_factory=list)


class DayStatus(str, Enum):
    AVAILABLE = "available"
    FULL = "full"  # AL COMPLETO
    CLOSED = "closed"  # AZIENDA CHIUSA
    PAST = "past"


DAY_STATUS_LABELS = {
    DayStatus.FULL: "AL COMPLETO",
    DayStatus.CLOSED: "AZIENDA CHIUSA",
}


class ZoneSlot(BaseModel):
    slot: str
    recommended: bool = False


class CalendarError(Exception):
    def __init__(self, message: str = CALENDAR_ERROR_MESSAGE):
        super().__init__(message)

# ============================================================================
# NORMALIZATION
# ============================================================================

def normalize_calendar_response(payload: Any) -> List[CalendarDay]:
    """Accept a bare list, {data: [...]} or {success: true, data: [...]}"""
    if isinstance(payload, list):
        entries = payload
    elif isinstance(payload, dict) and isinstance(payload.get("data"), list):
        entries = payload["data"]
    else:
        return []

    days: List[CalendarDay] = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("date"):
            continue
        days.append(CalendarDay(
            date=str(entry["date"]),
            day=entry.get("day") or "",
            slots=[str(s) for s in entry.get("slots") or []],
        ))
    return days


def parse_calendar_date(value: str) -> Optional[date]:
    """Parse the YYYY-MM-DD prefix as a local calendar date"""
    try:
        return datetime.strptime(value[:10], "%Y-%m-%d").date()
    except (TypeError, ValueError):
        return None


def _slot_key(slot: str) -> str:
    return re.sub(r"\s+", "", slot)

# ============================================================================
# AVAILABILITY
# ============================================================================

def available_dates(days: Iterable[CalendarDay]) -> List[date]:
    dates = set()
    for day in days:
        if not day.slots:
            continue
        parsed = parse_calendar_date(day.date)
        if parsed is None:
            logger.warning(f"Data non valida nel calendario: {day.date!r}")
            continue
        dates.add(parsed)
    return sorted(dates)


def time_slots_for_date(target: date, days: Iterable[CalendarDay]) -> List[str]:
    for day in days:
        if parse_calendar_date(day.date) == target:
            return list(day.slots)
    return []


def is_date_disabled(target: date, available: List[date], today: date) -> bool:
    # Today is never bookable
    if target <= today:
        return True
    return target not in available


def day_status(target: date, available: List[date], today: date) -> DayStatus:
    if target.weekday() == 6:
        return DayStatus.CLOSED
    if target < today:
        return DayStatus.PAST
    if is_date_disabled(target, available, today):
        return DayStatus.FULL
    return DayStatus.AVAILABLE


def default_selection(available: List[date], today: date) -> Optional[date]:
    """First available date, skipping today when something else is on offer"""
    if not available:
        return None
    if len(available) > 1 and available[0] == today:
        return available[1]
    return available[0]


def slots_for_zone(target: date, days: Iterable[CalendarDay], zone_id: Optional[str], zones: ZoneStore) -> List[ZoneSlot]:
    slots = time_slots_for_date(target, days)
    if not zone_id:
        return [ZoneSlot(slot=s) for s in slots]

    excluded = {_slot_key(s) for s in zones.get_excluded_time_slots(zone_id)}
    preferred = {_slot_key(s) for s in zones.get_recommended_time_slots(zone_id)}
    return [
        ZoneSlot(slot=s, recommended=_slot_key(s) in preferred)
        for s in slots
        if _slot_key(s) not in excluded
    ]

# ============================================================================
# CALENDAR SERVICE
# ============================================================================

class DeliveryCalendarService:
    """Loads the shop calendar and answers availability questions"""

    def __init__(self, woocommerce, zones: ZoneStore):
        self.woocommerce = woocommerce
        self.zones = zones

    async def load(self) -> List[CalendarDay]:
        try:
            payload = await self.woocommerce.get_delivery_calendar()
        except Exception as e:
            logger.error(f"Errore caricamento calendario: {e}")
            raise CalendarError() from e
        days = normalize_calendar_response(payload)
        logger.info(f"Calendario caricato: {len(days)} giorni")
        return days

    async def overview(self, today: Optional[date] = None) -> dict:
        today = today or date.today()
        days = await self.load()
        dates = available_dates(days)
        selected = default_selection(dates, today)
        return {
            "days": days,
            "available_dates": [d.isoformat() for d in dates],
            "default_date": selected.isoformat() if selected else None,
        }

    async def slots(self, target: date, zone_id: Optional[str] = None, today: Optional[date] = None) -> dict:
        today = today or date.today()
        days = await self.load()
        dates = available_dates(days)
        status = day_status(target, dates, today)
        slots = slots_for_zone(target, days, zone_id, self.zones) if status == DayStatus.AVAILABLE else []
        return {
            "date": target.isoformat(),
            "status": status,
            "label": DAY_STATUS_LABELS.get(status),
            "slots": slots,
        }
