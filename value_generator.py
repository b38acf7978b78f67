# value_generator.py
"""
Synthetic values for templates and parameter fallbacks.

``values()`` is recomputed on every call, so every template resolution sees
fresh data. Seeding the generator makes the sequence reproducible.
"""

import random
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from faker import Faker

from flow_logging import get_logger

logger = get_logger("Values")

BELGIAN_CITIES_EN = [
    "Brussels", "Antwerp", "Ghent", "Bruges", "Liège", "Namur", "Leuven", "Mons",
    "Aalst", "Mechelen", "La Louvière", "Kortrijk", "Hasselt", "Ostend",
    "Sint-Niklaas", "Tournai", "Genk", "Seraing", "Roeselare", "Verviers",
    "Mouscron", "Beveren", "Dendermonde", "Beringen", "Turnhout", "Dilbeek",
    "Sint-Truiden", "Lokeren", "Herstal", "Halle", "Geel", "Mol", "Vilvoorde",
    "Lommel", "Tienen", "Diest", "Waregem", "Tongeren", "Aarschot", "Bastogne",
    "Ninove", "Huy", "Eeklo", "Zaventem", "Wavre", "Lier", "Deinze", "Ypres",
    "Maaseik", "Bilzen",
]

# Upper bounds (exclusive) of the randomInt0_<n> values
RANDOM_INT_RANGES = (5, 10, 100, 200, 300, 500, 1000, 2000, 3000, 4000, 5000, 9999)

_LENGTH_SEGMENT = re.compile(r'^\[(\d+)\]$')

BarcodeParts = Union[str, Sequence[Union[str, int]]]


class ValueGenerator:
    """Produces the generated values available to every template pass."""

    def __init__(self, seed: Optional[int] = None, locale: Optional[str] = None):
        self.random = random.Random(seed)
        self.faker = Faker(locale) if locale else Faker()
        if seed is not None:
            self.faker.seed_instance(seed)
        self.helpers: Dict[str, Callable[..., Any]] = {
            "barcode": self.barcode,
            "pick": self.pick,
        }

    def _digits(self, length: int) -> str:
        return "".join(str(self.random.randrange(10)) for _ in range(length))

    def barcode(self, parts: BarcodeParts) -> str:
        """
        Build a code from literal and random-digit segments.

        ``parts`` is either a list such as ``["ABC", 10]`` (ints expand to that
        many random digits) or a compact pattern such as ``"ABC_[4]_247"``
        whose ``_``-separated ``[n]`` segments expand the same way.
        """
        if isinstance(parts, str):
            segments: List[Union[str, int]] = []
            for segment in parts.split("_"):
                match = _LENGTH_SEGMENT.match(segment)
                segments.append(int(match.group(1)) if match else segment)
            parts = segments

        result = []
        for part in parts:
            if isinstance(part, bool):
                result.append(str(part))
            elif isinstance(part, int):
                result.append(self._digits(part))
            else:
                result.append(str(part))
        return "".join(result)

    def pick(self, options: Sequence[Any]) -> Any:
        if not options:
            raise ValueError("pick() needs at least one option")
        return options[self.random.randrange(len(options))]

    def uuid(self) -> str:
        return str(uuid.UUID(int=self.random.getrandbits(128), version=4))

    def values(self) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        data: Dict[str, Any] = {
            "timestamp": int(now.timestamp() * 1000),
            "datetime": now.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "randomInt": self.random.randrange(1000),
        }
        for upper in RANDOM_INT_RANGES:
            data[f"randomInt0_{upper}"] = self.random.randrange(upper)

        data.update({
            "uuid": self.uuid(),
            "randomPostmanId": self.random.randrange(100000, 1000000),
            "randomEmail": self.faker.email(),
            "randomName": f"{self.faker.first_name()} {self.faker.last_name()}",
            "randomBarcode": self.barcode(["ABC", 10]),
            # Companies
            "randomCompanyName": self.faker.company(),
            # Addresses
            "randomStreet": self.faker.street_name(),
            "randomStreetNumber": self.random.randrange(200),
            "randomPostalCode": self._digits(4),
            "belgianCityEn": self.pick(BELGIAN_CITIES_EN),
            # Person
            "randomPersonName": self.faker.first_name(),
            "randomPersonSurname": self.faker.last_name(),
            "randomPersonPrefix": self.faker.prefix(),
            "phoneIntl": self.faker.phone_number(),
        })
        return data

    def generate(self, name: str) -> Any:
        """Return a single named value. Raises KeyError for unknown names."""
        values = self.values()
        if name not in values:
            raise KeyError(f"Unknown generated value '{name}'. Known: {', '.join(sorted(values))}")
        return values[name]
