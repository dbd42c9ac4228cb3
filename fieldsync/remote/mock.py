"""Fixture-backed transport used in mock mode and by tests.

Speeds are stored in mph for readability and served in km/h, the unit the
live API reports, so mock data goes through the same conversion as real data.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fieldsync.core.clock import SYSTEM_CLOCK, Clock, isoformat
from fieldsync.core.errors import NetworkFailure
from fieldsync.remote.schemas import Credentials

KMH_PER_MPH = 1 / 0.621371

MOCK_FLEET: List[Dict[str, Any]] = [
    {
        "id": "fiber-001",
        "name": "Fiber Truck 1",
        "comment": "John Smith",
        "latitude": 33.5186,
        "longitude": -86.8104,
        "speed_mph": 35,
        "bearing": 45,
        "online": True,
    },
    {
        "id": "fiber-002",
        "name": "Fiber Truck 2",
        "comment": "Sarah Johnson",
        "latitude": 32.3668,
        "longitude": -86.3000,
        "speed_mph": 0,
        "bearing": 180,
        "online": True,
    },
    {
        "id": "electric-001",
        "name": "Electric Truck 1",
        "comment": "Mike Wilson",
        "latitude": 34.7304,
        "longitude": -86.5861,
        "speed_mph": 25,
        "bearing": 90,
        "online": True,
    },
    {
        "id": "electric-002",
        "name": "Electric Truck 2",
        "comment": "Lisa Davis",
        "latitude": 30.6954,
        "longitude": -88.0399,
        "speed_mph": 0,
        "bearing": 270,
        "online": False,
    },
]


class MockTransport:
    """Authenticates instantly and answers `Get` for devices and statuses."""

    def __init__(self, fleet: Optional[List[Dict[str, Any]]] = None, *, clock: Clock = SYSTEM_CLOCK) -> None:
        self._fleet = list(MOCK_FLEET if fleet is None else fleet)
        self._clock = clock
        self.calls: List[str] = []

    async def authenticate(self, database: str, username: str, password: str) -> Credentials:
        self.calls.append("Authenticate")
        return Credentials(database=database or "demo", user_name=username or "mock", session_id="mock-session")

    async def call(self, method: str, params: Dict[str, Any], credentials: Credentials) -> Any:
        type_name = params.get("typeName")
        self.calls.append(f"{method}:{type_name}")
        if method != "Get":
            raise NetworkFailure(f"mock transport does not support {method}")
        if type_name == "Device":
            return [{"id": t["id"], "name": t["name"], "comment": t["comment"]} for t in self._fleet]
        if type_name == "DeviceStatusInfo":
            stamp = isoformat(self._clock.time())
            return [
                {
                    "device": {"id": t["id"]},
                    "latitude": t["latitude"],
                    "longitude": t["longitude"],
                    "speed": t["speed_mph"] * KMH_PER_MPH,
                    "bearing": t["bearing"],
                    "dateTime": stamp,
                    "isDeviceCommunicating": t["online"],
                }
                for t in self._fleet
            ]
        raise NetworkFailure(f"mock transport has no data for {type_name}")

    async def close(self) -> None:
        return None


__all__ = ["MOCK_FLEET", "MockTransport"]
