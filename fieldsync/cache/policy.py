"""Dataset catalogue: TTL, payload kind and size metric per dataset.

Every dataset declares its payload shape up front so size metrics and empty
results never depend on inspecting a cached value at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

DAY = 24 * 60 * 60
DEFAULT_TTL_SECONDS = float(DAY)


class PayloadKind(str, Enum):
    RECORDS = "records"
    FEATURE_COLLECTION = "feature_collection"
    OPAQUE = "opaque"


def _records_size(payload: Any) -> int:
    return len(payload or [])


def _feature_collection_size(payload: Any) -> int:
    return len((payload or {}).get("features") or [])


def _opaque_size(payload: Any) -> int:
    return 0 if payload is None else 1


_SIZE_FUNCTIONS: Dict[PayloadKind, Callable[[Any], int]] = {
    PayloadKind.RECORDS: _records_size,
    PayloadKind.FEATURE_COLLECTION: _feature_collection_size,
    PayloadKind.OPAQUE: _opaque_size,
}

_EMPTY_FACTORIES: Dict[PayloadKind, Callable[[], Any]] = {
    PayloadKind.RECORDS: list,
    PayloadKind.FEATURE_COLLECTION: lambda: {"type": "FeatureCollection", "features": []},
    PayloadKind.OPAQUE: lambda: None,
}


@dataclass(frozen=True)
class DatasetSpec:
    """Cache policy for one dataset type.

    Attributes:
        name: Dataset key used by both cache tiers.
        ttl_seconds: Maximum age before a persisted entry stops being valid.
        kind: Declared payload shape.
    """

    name: str
    ttl_seconds: float = DEFAULT_TTL_SECONDS
    kind: PayloadKind = PayloadKind.OPAQUE
    size_fn: Optional[Callable[[Any], int]] = field(default=None, compare=False)

    def size(self, payload: Any) -> int:
        func = self.size_fn or _SIZE_FUNCTIONS[self.kind]
        return func(payload)

    def empty(self) -> Any:
        return _EMPTY_FACTORIES[self.kind]()


# Infrastructure layers change about once a year; vehicles are near-realtime.
DEFAULT_DATASETS = (
    DatasetSpec("fsa", 90 * DAY, PayloadKind.FEATURE_COLLECTION),
    DatasetSpec("mainFiber", 90 * DAY, PayloadKind.FEATURE_COLLECTION),
    DatasetSpec("mainOld", 365 * DAY, PayloadKind.FEATURE_COLLECTION),
    DatasetSpec("mstFiber", 90 * DAY, PayloadKind.FEATURE_COLLECTION),
    DatasetSpec("mstTerminals", 30 * DAY, PayloadKind.FEATURE_COLLECTION),
    DatasetSpec("closures", 30 * DAY, PayloadKind.FEATURE_COLLECTION),
    DatasetSpec("splitters", 30 * DAY, PayloadKind.FEATURE_COLLECTION),
    DatasetSpec("nodeSites", 90 * DAY, PayloadKind.FEATURE_COLLECTION),
    DatasetSpec("vehicles", 5 * 60, PayloadKind.RECORDS),
)


class DatasetRegistry:
    """Immutable dataset type -> policy mapping with a 24h fallback."""

    def __init__(
        self,
        specs: Iterable[DatasetSpec] = DEFAULT_DATASETS,
        *,
        default_ttl_seconds: float = DEFAULT_TTL_SECONDS,
    ) -> None:
        self._specs: Mapping[str, DatasetSpec] = MappingProxyType({spec.name: spec for spec in specs})
        self.default_ttl_seconds = float(default_ttl_seconds)

    def get(self, dataset_type: str) -> DatasetSpec:
        spec = self._specs.get(dataset_type)
        if spec is not None:
            return spec
        return DatasetSpec(dataset_type, self.default_ttl_seconds, PayloadKind.OPAQUE)

    def ttl(self, dataset_type: str) -> float:
        return self.get(dataset_type).ttl_seconds

    def with_overrides(self, *specs: DatasetSpec) -> "DatasetRegistry":
        merged = dict(self._specs)
        merged.update({spec.name: spec for spec in specs})
        return DatasetRegistry(merged.values(), default_ttl_seconds=self.default_ttl_seconds)

    def __contains__(self, dataset_type: object) -> bool:
        return dataset_type in self._specs

    def names(self) -> list[str]:
        return sorted(self._specs)


__all__ = [
    "DEFAULT_DATASETS",
    "DEFAULT_TTL_SECONDS",
    "DatasetRegistry",
    "DatasetSpec",
    "PayloadKind",
]
