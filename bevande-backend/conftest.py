import shutil
from pathlib import Path

import pytest

from zone_service import ZoneStore

SAMPLE_ZONES = Path(__file__).resolve().parent / "data" / "delivery_zones.json"


@pytest.fixture
def zones_file(tmp_path):
    """Writable copy of the sample delivery zones."""
    target = tmp_path / "delivery_zones.json"
    shutil.copy(SAMPLE_ZONES, target)
    return target


@pytest.fixture
def zone_store(zones_file):
    return ZoneStore(str(zones_file))


@pytest.fixture
def calendar_payload():
    return {
        "success": True,
        "data": [
            {"date": "2025-06-09", "day": "Lunedì", "slots": ["07:00-08:00", "11:00 - 12:00", "12:00 - 13:00"]},
            {"date": "2025-06-10", "day": "Martedì", "slots": ["09:00 - 10:00"]},
            {"date": "2025-06-11", "day": "Mercoledì", "slots": []},
        ],
    }
