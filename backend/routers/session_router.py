"""
Session HTTP endpoints.

Routes:
  GET /api/stats                  — Monitoring: active sessions, per-session phase, graph health
  GET /api/sessions/{session_id}  — Public session state (no participant ids or ballots)
"""
import logging

from fastapi import APIRouter, HTTPException, Request

from services.orchestrator import SessionOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sessions"])


def _orchestrator(request: Request) -> SessionOrchestrator:
    return request.app.state.orchestrator


@router.get("/stats")
async def get_stats(request: Request):
    """Server stats for monitoring dashboards."""
    return _orchestrator(request).stats()


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, request: Request):
    orchestrator = _orchestrator(request)
    snapshot = orchestrator.registry.get(session_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Session not found")
    node = orchestrator.graph.get_node(snapshot.current_node_id)
    return {
        **snapshot.to_public(),
        "nodeTitle": node.title if node else None,
        "isEnding": orchestrator.graph.is_ending(snapshot.current_node_id),
    }
