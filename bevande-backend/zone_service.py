# zone_service.py - Delivery zones for Imperatore Bevande
# Polygon zones drawn by the admin, address fallback and time-slot restrictions

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("Imperatore.Zones")

DELIVERY_ZONES_FILE = os.getenv(
    "DELIVERY_ZONES_FILE",
    str(Path(__file__).resolve().parent / "data" / "delivery_zones.json"),
)

DEFAULT_ZONE_COLOR = "#3B82F6"

# Fasce orarie gestite dal servizio consegne
ALL_TIME_SLOTS: List[str] = [
    "07:00 - 08:00",
    "08:00 - 09:00",
    "09:00 - 10:00",
    "10:00 - 11:00",
    "11:00 - 12:00",
    "12:00 - 13:00",
    "13:00 - 14:00",
    "14:00 - 15:00",
    "15:00 - 16:00",
]

# Defaults for polygons drawn from the admin map
NEW_ZONE_DESCRIPTION = "Servizio consegne attivo con fasce orarie disponibili"
NEW_ZONE_PROVINCES = ["BA"]
NEW_ZONE_PREFERRED_SLOTS = ["09:00-12:00", "15:00-18:00"]

# ============================================================================
# EXCEPTIONS
# ============================================================================

class ZoneError(Exception):
    """Base error for zone operations"""


class ZoneNotFound(ZoneError):
    def __init__(self, zone_id: str):
        super().__init__(f"Zona non trovata: {zone_id}")
        self.zone_id = zone_id


class InvalidPolygon(ZoneError):
    """Raised when a drawn polygon cannot become a zone"""

# ============================================================================
# DATA MODELS
# ============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class LatLng(_CamelModel):
    lat: float
    lng: float


class TimeSlotRestrictions(_CamelModel):
    excluded_slots: List[str] = Field(default_factory=list, alias="excludedSlots")
    preferred_slots: List[str] = Field(default_factory=list, alias="preferredSlots")


class ZonePolygon(_CamelModel):
    # GeoJSON order: [lng, lat]
    coordinates: List[Any]
    center: LatLng = Field(default_factory=lambda: LatLng(lat=0, lng=0))
    type: str = "Polygon"


class DeliveryZone(_CamelModel):
    id: str
    name: str
    description: str = ""
    cities: List[str] = Field(default_factory=list)
    provinces: List[str] = Field(default_factory=list)
    postal_codes: List[str] = Field(default_factory=list, alias="postalCodes")
    color: str = DEFAULT_ZONE_COLOR
    polygon: Optional[ZonePolygon] = None
    time_slot_restrictions: TimeSlotRestrictions = Field(
        default_factory=TimeSlotRestrictions, alias="timeSlotRestrictions"
    )


class ZoneAddress(_CamelModel):
    postal_code: Optional[str] = Field(None, alias="postalCode")
    city: Optional[str] = None
    province: Optional[str] = None
    address: Optional[str] = None
    coordinates: Optional[LatLng] = None

# ============================================================================
# GEOMETRY
# ============================================================================

_EPSILON = 1e-12


def _on_segment(x: float, y: float, a: Sequence[float], b: Sequence[float]) -> bool:
    ax, ay = a[0], a[1]
    bx, by = b[0], b[1]
    cross = (bx - ax) * (y - ay) - (by - ay) * (x - ax)
    if abs(cross) > _EPSILON:
        return False
    return (
        min(ax, bx) - _EPSILON <= x <= max(ax, bx) + _EPSILON
        and min(ay, by) - _EPSILON <= y <= max(ay, by) + _EPSILON
    )


def _open_ring(ring: Sequence[Sequence[float]]) -> List[Sequence[float]]:
    points = list(ring)
    if len(points) > 1 and list(points[0][:2]) == list(points[-1][:2]):
        points = points[:-1]
    return points


def point_in_ring(x: float, y: float, ring: Sequence[Sequence[float]], include_boundary: bool = True) -> bool:
    """Ray casting test; x is longitude, y is latitude"""
    points = _open_ring(ring)
    if len({(p[0], p[1]) for p in points}) < 3:
        return False

    inside = False
    count = len(points)
    for i in range(count):
        a = points[i]
        b = points[(i + 1) % count]
        if _on_segment(x, y, a, b):
            return include_boundary
        if (a[1] > y) != (b[1] > y):
            x_cross = a[0] + (y - a[1]) * (b[0] - a[0]) / (b[1] - a[1])
            if x < x_cross:
                inside = not inside
    return inside


def point_in_polygon(lat: float, lng: float, rings: Sequence[Sequence[Sequence[float]]]) -> bool:
    """GeoJSON polygon test: first ring is the shell, the others are holes.

    Points on the shell edge are inside; points on a hole edge are still
    inside the polygon, only the hole interior is excluded.
    """
    if not rings:
        return False
    if not point_in_ring(lng, lat, rings[0], include_boundary=True):
        return False
    for hole in rings[1:]:
        if point_in_ring(lng, lat, hole, include_boundary=False):
            return False
    return True


def polygon_contains(polygon: ZonePolygon, lat: float, lng: float) -> bool:
    try:
        if polygon.type == "MultiPolygon":
            return any(point_in_polygon(lat, lng, member) for member in polygon.coordinates)
        return point_in_polygon(lat, lng, polygon.coordinates)
    except (TypeError, IndexError, ValueError) as e:
        logger.error(f"Errore nel controllo del poligono: {e}")
        return False


def polygon_from_drawn_points(points: Sequence[Sequence[float]]) -> ZonePolygon:
    """Convert [lat, lng] map clicks to a closed GeoJSON ring with its center"""
    if len(points) < 3:
        raise InvalidPolygon("Servono almeno 3 punti per disegnare una zona")

    center = LatLng(
        lat=sum(p[0] for p in points) / len(points),
        lng=sum(p[1] for p in points) / len(points),
    )

    ring = [[p[1], p[0]] for p in points]
    if ring[0] != ring[-1]:
        ring.append(list(ring[0]))

    return ZonePolygon(coordinates=[ring], center=center)

# ============================================================================
# PARSING
# ============================================================================

def _zone_from_feature(feature: Dict[str, Any]) -> DeliveryZone:
    properties = feature.get("properties")
    if not isinstance(properties, dict):
        properties = {}
    geometry = feature.get("geometry")
    polygon = None
    if isinstance(geometry, dict) and geometry.get("type") in ("Polygon", "MultiPolygon"):
        polygon = ZonePolygon(
            coordinates=geometry.get("coordinates") or [],
            center=properties.get("center") or {"lat": 0, "lng": 0},
            type=geometry["type"],
        )
    return DeliveryZone(
        id=str(properties.get("id") or "unknown"),
        name=properties.get("name") or "Zona sconosciuta",
        description=properties.get("description") or "",
        color=properties.get("color") or DEFAULT_ZONE_COLOR,
        polygon=polygon,
        time_slot_restrictions=properties.get("timeSlotRestrictions") or {},
    )


def parse_zones(data: Any) -> List[DeliveryZone]:
    """Parse either a zone array or a GeoJSON FeatureCollection.

    Entries that are not objects or fail validation are logged and skipped.
    """
    if isinstance(data, list):
        entries, build = data, DeliveryZone.model_validate
    elif isinstance(data, dict) and isinstance(data.get("features"), list):
        entries, build = data["features"], _zone_from_feature
    else:
        return []

    zones: List[DeliveryZone] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            logger.warning(f"Zona {index} ignorata: non è un oggetto")
            continue
        try:
            zones.append(build(entry))
        except ValueError as e:
            logger.warning(f"Zona {index} ignorata: {e}")
    return zones


def export_zones(zones: Iterable[DeliveryZone]) -> str:
    """JSON document for deliveryZones.json"""
    payload = [zone.model_dump(by_alias=True, exclude_none=True) for zone in zones]
    return json.dumps(payload, indent=2, ensure_ascii=False)

# ============================================================================
# ZONE STORE
# ============================================================================

class ZoneStore:
    """Delivery zones backed by a JSON file"""

    def __init__(self, path: str = DELIVERY_ZONES_FILE):
        self.path = Path(path)
        self.zones: List[DeliveryZone] = self._load_zones()

    def _load_zones(self) -> List[DeliveryZone]:
        if not self.path.exists():
            logger.warning(f"File zone non trovato: {self.path}")
            return []
        try:
            with self.path.open(encoding="utf-8") as fh:
                return parse_zones(json.load(fh))
        except (OSError, ValueError, TypeError) as e:
            logger.error(f"Errore nel parsing delle zone: {e}")
            return []

    def reload(self) -> None:
        self.zones = self._load_zones()

    def save(self) -> str:
        document = export_zones(self.zones)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(document, encoding="utf-8")
        logger.info(f"Salvate {len(self.zones)} zone in {self.path}")
        return document

    # ------------------------------------------------------------------ lookup

    def get_all_zones(self) -> List[DeliveryZone]:
        return list(self.zones)

    def get_zone_by_id(self, zone_id: str) -> Optional[DeliveryZone]:
        for zone in self.zones:
            if zone.id == zone_id:
                return zone
        return None

    def _require_zone(self, zone_id: str) -> DeliveryZone:
        zone = self.get_zone_by_id(zone_id)
        if zone is None:
            raise ZoneNotFound(zone_id)
        return zone

    def determine_zone_from_coordinates(self, lat: float, lng: float) -> Optional[DeliveryZone]:
        for zone in self.zones:
            if zone.polygon and zone.polygon.coordinates and polygon_contains(zone.polygon, lat, lng):
                return zone
        return None

    def determine_zone_from_address(self, address: ZoneAddress) -> Optional[DeliveryZone]:
        """Coordinates first, then postal code, city, province and zone name"""
        if address.coordinates:
            zone = self.determine_zone_from_coordinates(address.coordinates.lat, address.coordinates.lng)
            if zone:
                return zone

        if address.postal_code:
            for zone in self.zones:
                if address.postal_code in zone.postal_codes:
                    return zone

        city = (address.city or "").strip().lower()
        if city:
            for zone in self.zones:
                if any(city in c.lower() or c.lower() in city for c in zone.cities):
                    return zone

        if address.province:
            for zone in self.zones:
                if address.province in zone.provinces:
                    return zone

        if city:
            for zone in self.zones:
                if city in zone.name.lower():
                    return zone

        return None

    # ------------------------------------------------------------- time slots

    def get_recommended_time_slots(self, zone_id: str) -> List[str]:
        zone = self.get_zone_by_id(zone_id)
        if not zone:
            return []
        return list(zone.time_slot_restrictions.preferred_slots)

    def get_excluded_time_slots(self, zone_id: str) -> List[str]:
        zone = self.get_zone_by_id(zone_id)
        if not zone:
            return []
        return list(zone.time_slot_restrictions.excluded_slots)

    def get_available_time_slots(self, zone_id: str) -> List[str]:
        excluded = self.get_excluded_time_slots(zone_id)
        return [slot for slot in ALL_TIME_SLOTS if slot not in excluded]

    # ------------------------------------------------------------------ admin

    def create_zone_from_drawn_polygon(self, points: Sequence[Sequence[float]]) -> DeliveryZone:
        polygon = polygon_from_drawn_points(points)
        zone = DeliveryZone(
            id=f"zona-{int(time.time() * 1000)}",
            name=f"Zona Poligono {len(self.zones) + 1}",
            description=NEW_ZONE_DESCRIPTION,
            provinces=list(NEW_ZONE_PROVINCES),
            color=DEFAULT_ZONE_COLOR,
            polygon=polygon,
            time_slot_restrictions=TimeSlotRestrictions(preferred_slots=list(NEW_ZONE_PREFERRED_SLOTS)),
        )
        self.zones.append(zone)
        self.save()
        logger.info(f"Creata zona {zone.id} con {len(points)} vertici")
        return zone

    def update_zone_polygon(self, zone_id: str, points: Sequence[Sequence[float]]) -> DeliveryZone:
        zone = self._require_zone(zone_id)
        zone.polygon = polygon_from_drawn_points(points)
        self.save()
        return zone

    def update_zone(self, zone_id: str, changes: Dict[str, Any]) -> DeliveryZone:
        zone = self._require_zone(zone_id)
        merged = zone.model_dump(by_alias=False)
        merged.update({k: v for k, v in changes.items() if v is not None})
        merged["id"] = zone.id
        updated = DeliveryZone.model_validate(merged)
        self.zones[self.zones.index(zone)] = updated
        self.save()
        return updated

    def set_time_slot_enabled(self, zone_id: str, slot: str, enabled: bool) -> DeliveryZone:
        zone = self._require_zone(zone_id)
        excluded = zone.time_slot_restrictions.excluded_slots
        if enabled:
            zone.time_slot_restrictions.excluded_slots = [s for s in excluded if s != slot]
        elif slot not in excluded:
            zone.time_slot_restrictions.excluded_slots = excluded + [slot]
        self.save()
        return zone

    def delete_zone(self, zone_id: str) -> None:
        zone = self._require_zone(zone_id)
        self.zones.remove(zone)
        self.save()
        logger.info(f"Eliminata zona {zone_id}")


def is_time_slot_enabled(zone: DeliveryZone, slot: str) -> bool:
    return slot not in zone.time_slot_restrictions.excluded_slots


# Singleton instance
zone_store_instance: Optional[ZoneStore] = None

def get_zone_store() -> ZoneStore:
    """Get or create the zone store"""
    global zone_store_instance
    if zone_store_instance is None:
        zone_store_instance = ZoneStore()
    return zone_store_instance
