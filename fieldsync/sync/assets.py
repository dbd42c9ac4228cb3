"""Canonical fleet asset records built from device + device status rows."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from fieldsync.remote.schemas import Device, DeviceStatusInfo

logger = logging.getLogger(__name__)

MPH_PER_KMH = 0.621371
DRIVING_THRESHOLD_MPH = 5
FIBER_KEYWORDS = ("fiber", "cable")


class AssetRecord(BaseModel):
    id: str
    name: str
    latitude: float
    longitude: float
    speed: int = Field(description="Speed in mph")
    bearing: float = 0.0
    last_updated: str
    communication_status: str
    vehicle_type: str
    installer: str
    is_driving: bool = False

    model_config = ConfigDict(frozen=True)


def categorize_vehicle(name: str) -> str:
    lowered = (name or "").lower()
    if any(keyword in lowered for keyword in FIBER_KEYWORDS):
        return "fiber"
    return "electric"


def convert_speed(speed_kmh: Optional[float]) -> int:
    return round((speed_kmh or 0) * MPH_PER_KMH)


def build_asset_records(
    devices: Iterable[Device],
    statuses: Iterable[DeviceStatusInfo],
    *,
    now_iso: str,
) -> List[AssetRecord]:
    """Join devices with their latest status.

    Devices without a name, without a status or without coordinates are
    skipped; a missing status timestamp falls back to `now_iso`.
    """

    by_device: Dict[str, DeviceStatusInfo] = {}
    for status in statuses:
        if status.device_id:
            by_device[status.device_id] = status

    records: List[AssetRecord] = []
    skipped = 0
    for device in devices:
        status = by_device.get(device.id)
        if not device.name or status is None or not status.latitude or not status.longitude:
            skipped += 1
            continue
        speed = convert_speed(status.speed)
        records.append(
            AssetRecord(
                id=device.id,
                name=device.name,
                latitude=float(status.latitude),
                longitude=float(status.longitude),
                speed=speed,
                bearing=float(status.bearing or 0),
                last_updated=status.date_time or now_iso,
                communication_status="Online" if status.is_device_communicating else "Offline",
                vehicle_type=categorize_vehicle(device.name),
                installer=device.comment or device.name,
                is_driving=speed > DRIVING_THRESHOLD_MPH,
            )
        )
    if skipped:
        logger.debug("sync.assets.skipped", extra={"skipped": skipped})
    return records


def split_by_type(records: Iterable[dict]) -> Dict[str, List[dict]]:
    grouped: Dict[str, List[dict]] = {"fiber": [], "electric": []}
    for record in records:
        grouped.setdefault(record.get("vehicle_type", "electric"), []).append(record)
    return grouped


__all__ = [
    "AssetRecord",
    "build_asset_records",
    "categorize_vehicle",
    "convert_speed",
    "split_by_type",
]
