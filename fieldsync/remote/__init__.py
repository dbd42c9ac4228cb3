"""Remote telemetry API access.

- ``RemoteDataClient``: authenticated client with the auth/rate-limit state machine.
- ``JsonRpcTransport``: aiohttp JSON-RPC transport used in production.
- ``MockTransport``: fixture transport for mock mode and tests.
"""

from .auth import AuthEvent, AuthState, AuthStateMachine, InvalidTransition
from .client import RemoteDataClient
from .mock import MockTransport
from .transport import JsonRpcTransport, RemoteTransport

__all__ = [
    "AuthEvent",
    "AuthState",
    "AuthStateMachine",
    "InvalidTransition",
    "JsonRpcTransport",
    "MockTransport",
    "RemoteDataClient",
    "RemoteTransport",
]
