from dataclasses import dataclass

from dataclasses_json import dataclass_json


@dataclass_json
@dataclass
class TripRequest:
    start_location: str
    departure_datetime: str
    cities: str | list[str]
    preferences: str = ""

    def get_cities(self) -> list[str]:
        """Always returns cities as a cleaned list, regardless of input type."""
        raw = self.cities if isinstance(self.cities, list) else [self.cities]
        return [c.strip() for c in raw if isinstance(c, str) and c.strip()]

    def validate(self) -> None:
        """Raise ValueError when a required field is missing."""
        if not self.start_location or not self.start_location.strip():
            raise ValueError("start_location is required")
        if not self.get_cities():
            raise ValueError("At least one destination city is required")

    def signature_payload(self) -> dict:
        """Normalised form used as the generation cache identity."""
        return {
            "start_location": self.start_location.strip().lower(),
            "departure_datetime": self.departure_datetime.strip(),
            "cities": [c.lower() for c in self.get_cities()],
            "preferences": self.preferences.strip(),
        }

    @classmethod
    def from_payload(cls, data: dict) -> "TripRequest":
        """Build from a loosely-typed request body; missing keys become blanks."""
        cities = data.get("cities") or []
        if not isinstance(cities, (str, list)):
            cities = []
        return cls(
            start_location=str(data.get("start_location") or ""),
            departure_datetime=str(data.get("departure_datetime") or ""),
            cities=cities,
            preferences=str(data.get("preferences") or ""),
        )
