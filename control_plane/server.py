"""
Control Plane HTTP server.

Mounts the /control API and a health endpoint. Run with
`python -m control_plane`.
"""
from fastapi import FastAPI

from observability.event_store import event_store
from .control_api import router as control_router
from .session import session_manager

app = FastAPI(title="Realtime Orchestrator Control Plane")
app.include_router(control_router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "component": "control_plane",
        "sessions": len(session_manager.list_sessions()),
        "events": event_store.get_stats()["total_events"],
    }
