# geocoding_service.py - Address geocoding for the delivery area
# Google Geocoding API with a table of known Bari neighbourhoods as fallback

import logging
import os
from typing import Dict, Optional

import httpx
from pydantic import BaseModel

logger = logging.getLogger("Imperatore.Geocoding")

GOOGLE_MAPS_API_KEY = os.getenv("GOOGLE_MAPS_API_KEY", "")
GEOCODING_URL = "https://maps.googleapis.com/maps/api/geocode/json"

NOT_COVERED_MESSAGE = "L'indirizzo inserito non sembra essere coperto dal nostro servizio di consegna"

BARI_CENTER = (41.1177, 16.8719)

# Quartieri e comuni serviti -> (lat, lng)
KNOWN_AREAS: Dict[str, tuple] = {
    "triggiano": (41.0667, 16.9167),
    "valenzano": (41.0500, 16.8833),
    "poggiofranco": (41.1167, 16.8667),
    "poggifranco": (41.1167, 16.8667),
    "carbonara": (41.1333, 16.9000),
    "ceglie del campo": (41.1000, 16.9333),
    "amendola": (41.1000, 16.8500),
    "sanpasquale": (41.1167, 16.8833),
    "japigia": (41.0833, 16.8833),
    "madonnella": (41.1167, 16.8667),
    "libertà": (41.1167, 16.8667),
    "palese": (41.1500, 16.8000),
    "stanic": (41.1333, 16.8000),
    "modugno": (41.0833, 16.8333),
    "bitrito": (41.0500, 16.8667),
    "cellamare": (41.0333, 16.9000),
    "torre a mare": (41.0667, 16.9500),
    "capurso": (41.0667, 16.9333),
    "mungivacca": (41.1000, 16.8833),
    "carrassi": (41.1167, 16.8833),
    "centro": BARI_CENTER,
    "sangirolamo": (41.1000, 16.8500),
    "fesca": (41.1000, 16.8500),
    "sanpaolo": (41.1000, 16.8333),
    "loseto": (41.0833, 16.9167),
    "adelfia": (41.0167, 16.8667),
    "sangiorgio": (41.0833, 16.8167),
}


class GeocodeResult(BaseModel):
    lat: float
    lng: float
    formatted_address: str = ""


class AddressQuery(BaseModel):
    address: str = ""
    city: str = ""
    province: str = ""
    postal_code: str = ""

    def full_address(self) -> str:
        return f"{self.address}, {self.city}, {self.province}, {self.postal_code}, Italy"


def geocode_address_simple(text: str) -> Optional[GeocodeResult]:
    """Approximate position from neighbourhood names found in the text"""
    lower = (text or "").lower()
    if not lower.strip():
        return None
    for name, (lat, lng) in KNOWN_AREAS.items():
        if name in lower or name.replace(" ", "") in lower:
            return GeocodeResult(lat=lat, lng=lng, formatted_address=name.title())
    if "bari" in lower:
        return GeocodeResult(lat=BARI_CENTER[0], lng=BARI_CENTER[1], formatted_address="Bari")
    return None


class GeocodingService:
    def __init__(self, api_key: str = GOOGLE_MAPS_API_KEY, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def geocode_address(self, query: AddressQuery) -> Optional[GeocodeResult]:
        if not self.configured:
            return None
        params = {
            "address": query.full_address(),
            "components": "country:IT",
            "region": "it",
            "key": self.api_key,
        }
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self.transport) as client:
                response = await client.get(GEOCODING_URL, params=params)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Errore nel geocoding dell'indirizzo: {e}")
            return None

        results = data.get("results") or []
        if data.get("status") != "OK" or not results:
            logger.warning(f"Geocoding fallito: {data.get('status')}")
            return None

        first = results[0]
        location = first["geometry"]["location"]
        return GeocodeResult(lat=location["lat"], lng=location["lng"], formatted_address=first.get("formatted_address", ""))

    async def locate(self, text: str) -> Optional[GeocodeResult]:
        """Free-text lookup: Google when configured, known areas otherwise"""
        if self.configured:
            result = await self.geocode_address(AddressQuery(address=text))
            if result:
                return result
        return geocode_address_simple(text)


# Singleton instance
geocoding_instance: Optional[GeocodingService] = None

def get_geocoding_service() -> GeocodingService:
    global geocoding_instance
    if geocoding_instance is None:
        geocoding_instance = GeocodingService()
    return geocoding_instance
