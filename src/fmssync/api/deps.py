"""Request-scoped dependencies shared by the route modules."""
from fastapi import Request

from fmssync.sync.orchestrator import SyncOrchestrator


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """The orchestrator the app was built with."""
    return request.app.state.orchestrator
