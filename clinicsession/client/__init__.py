"""
ClinicSession - Session Client

Async client side of the session layer:
- RefreshCoordinator: single-flight, retry-bounded token refresh
- RequestGate: attaches credentials, recovers once from 401
- SessionSynchronizer: mirrors token changes across contexts
"""

from clinicsession.client.coordinator import RefreshCoordinator, RefreshState
from clinicsession.client.gate import RequestGate, requires_auth
from clinicsession.client.storage import SessionSignals, SessionStore, SharedStorage
from clinicsession.client.sync import SessionSynchronizer

__all__ = [
    "RefreshCoordinator",
    "RefreshState",
    "RequestGate",
    "requires_auth",
    "SessionSignals",
    "SessionStore",
    "SharedStorage",
    "SessionSynchronizer",
]
