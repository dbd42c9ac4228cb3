"""Fetch orchestration and poll distribution."""

from .orchestrator import FetchOrchestrator, FetchResult, vehicles_fetcher
from .polling import LateResultPolicy, PollingDistributor, PollSession, PollUpdate
from .singleflight import SingleFlight

__all__ = [
    "FetchOrchestrator",
    "FetchResult",
    "LateResultPolicy",
    "PollSession",
    "PollUpdate",
    "PollingDistributor",
    "SingleFlight",
    "vehicles_fetcher",
]
