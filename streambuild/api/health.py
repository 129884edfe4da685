# streambuild/api/health.py
"""
Health check endpoints.
"""
from datetime import datetime, timezone
from fastapi import APIRouter

from streambuild.session import session_manager

router = APIRouter(tags=["Health"])


@router.get("/healthz")
async def healthz():
    """Simple health check."""
    return {"ok": True, "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/api/health")
async def api_health():
    """API health check with live session count."""
    return {
        "status": "healthy",
        "sessions": len(session_manager.sessions),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
