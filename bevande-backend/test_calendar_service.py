"""Tests for the delivery calendar."""

from datetime import date
from unittest.mock import AsyncMock

import httpx
import pytest

from calendar_service import (
    CalendarDay,
    CalendarError,
    DayStatus,
    DeliveryCalendarService,
    available_dates,
    day_status,
    default_selection,
    is_date_disabled,
    normalize_calendar_response,
    parse_calendar_date,
    slots_for_zone,
    time_slots_for_date,
)

MONDAY = date(2025, 6, 9)
TUESDAY = date(2025, 6, 10)
SUNDAY = date(2025, 6, 15)


class TestNormalization:
    def test_envelope_with_success_flag(self, calendar_payload):
        days = normalize_calendar_response(calendar_payload)
        assert [d.date for d in days] == ["2025-06-09", "2025-06-10", "2025-06-11"]
        assert days[0].day == "Lunedì"

    def test_bare_list(self):
        days = normalize_calendar_response([{"date": "2025-06-09", "slots": ["09:00 - 10:00"]}])
        assert days == [CalendarDay(date="2025-06-09", slots=["09:00 - 10:00"])]

    def test_entries_without_date_are_skipped(self):
        assert normalize_calendar_response({"data": [{"slots": ["x"]}, "junk"]}) == []

    def test_unexpected_shape(self):
        assert normalize_calendar_response({"error": "boom"}) == []
        assert normalize_calendar_response(None) == []

    def test_parse_date_ignores_time_part(self):
        assert parse_calendar_date("2025-06-09T00:00:00Z") == MONDAY
        assert parse_calendar_date("09/06/2025") is None


class TestAvailability:
    def test_available_dates_need_slots(self, calendar_payload):
        days = normalize_calendar_response(calendar_payload)
        assert available_dates(days) == [MONDAY, TUESDAY]

    def test_available_dates_sorted_and_unique(self):
        days = [
            CalendarDay(date="2025-06-10", slots=["a"]),
            CalendarDay(date="2025-06-09", slots=["a"]),
            CalendarDay(date="2025-06-10", slots=["b"]),
            CalendarDay(date="not-a-date", slots=["a"]),
        ]
        assert available_dates(days) == [MONDAY, TUESDAY]

    def test_time_slots_for_date(self, calendar_payload):
        days = normalize_calendar_response(calendar_payload)
        assert time_slots_for_date(TUESDAY, days) == ["09:00 - 10:00"]
        assert time_slots_for_date(date(2025, 7, 1), days) == []

    def test_today_is_never_bookable(self):
        assert is_date_disabled(MONDAY, [MONDAY, TUESDAY], today=MONDAY)
        assert not is_date_disabled(TUESDAY, [MONDAY, TUESDAY], today=MONDAY)

    def test_day_status(self):
        available = [MONDAY, TUESDAY]
        today = date(2025, 6, 8)
        assert day_status(SUNDAY, available, today) == DayStatus.CLOSED
        assert day_status(date(2025, 6, 5), available, today) == DayStatus.PAST
        assert day_status(date(2025, 6, 12), available, today) == DayStatus.FULL
        assert day_status(MONDAY, available, today) == DayStatus.AVAILABLE

    def test_default_selection_skips_today(self):
        assert default_selection([MONDAY, TUESDAY], today=MONDAY) == TUESDAY
        assert default_selection([MONDAY], today=MONDAY) == MONDAY
        assert default_selection([], today=MONDAY) is None


class TestZoneSlots:
    def test_excluded_slots_are_removed_ignoring_spaces(self, calendar_payload, zone_store):
        days = normalize_calendar_response(calendar_payload)
        slots = slots_for_zone(MONDAY, days, "zona-triggiano-capurso", zone_store)
        assert [s.slot for s in slots] == ["11:00 - 12:00", "12:00 - 13:00"]
        assert [s.recommended for s in slots] == [True, False]

    def test_without_zone_every_slot_is_offered(self, calendar_payload, zone_store):
        days = normalize_calendar_response(calendar_payload)
        slots = slots_for_zone(MONDAY, days, None, zone_store)
        assert len(slots) == 3
        assert not any(s.recommended for s in slots)


class TestDeliveryCalendarService:
    async def test_overview(self, calendar_payload, zone_store):
        woocommerce = AsyncMock()
        woocommerce.get_delivery_calendar.return_value = calendar_payload
        service = DeliveryCalendarService(woocommerce, zone_store)

        overview = await service.overview(today=MONDAY)

        assert overview["available_dates"] == ["2025-06-09", "2025-06-10"]
        assert overview["default_date"] == "2025-06-10"

    async def test_slots_for_closed_day_are_empty(self, calendar_payload, zone_store):
        woocommerce = AsyncMock()
        woocommerce.get_delivery_calendar.return_value = calendar_payload
        service = DeliveryCalendarService(woocommerce, zone_store)

        result = await service.slots(MONDAY, today=MONDAY)

        assert result["status"] == DayStatus.FULL
        assert result["label"] == "AL COMPLETO"
        assert result["slots"] == []

    async def test_slots_for_zone(self, calendar_payload, zone_store):
        woocommerce = AsyncMock()
        woocommerce.get_delivery_calendar.return_value = calendar_payload
        service = DeliveryCalendarService(woocommerce, zone_store)

        result = await service.slots(MONDAY, zone_id="zona-bari-centro", today=date(2025, 6, 8))

        assert result["status"] == DayStatus.AVAILABLE
        assert result["label"] is None
        assert len(result["slots"]) == 3

    async def test_upstream_failure(self, zone_store):
        woocommerce = AsyncMock()
        woocommerce.get_delivery_calendar.side_effect = httpx.ConnectError("down")
        service = DeliveryCalendarService(woocommerce, zone_store)

        with pytest.raises(CalendarError, match="Errore nel caricamento del calendario"):
            await service.load()
