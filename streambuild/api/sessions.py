# streambuild/api/sessions.py
"""
Build session routes.
"""
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from streambuild.session import BuildSession, session_manager

router = APIRouter(prefix="/api/sessions", tags=["Sessions"])


class CreateSessionRequest(BaseModel):
    session_id: Optional[str] = None


class MessageRequest(BaseModel):
    turn_id: str
    content: str


def _get_session(session_id: str) -> BuildSession:
    session = session_manager.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


@router.post("", status_code=201)
async def create_session(data: Optional[CreateSessionRequest] = None):
    """Create a session and boot its sandbox."""
    session_id = data.session_id if data else None
    if session_id and session_manager.get(session_id) is not None:
        raise HTTPException(status_code=409, detail=f"Session {session_id} already exists")
    session = await session_manager.create(session_id=session_id)
    return {"session_id": session.session_id, "degraded": session.degraded}


@router.post("/{session_id}/messages")
async def post_message(session_id: str, data: MessageRequest):
    """Feed the cumulative model output of one turn."""
    session = _get_session(session_id)
    output = session.feed(data.turn_id, data.content)
    return {"turn_id": data.turn_id, "output": output}


@router.get("/{session_id}")
async def get_session(session_id: str):
    return _get_session(session_id).snapshot()


@router.get("/{session_id}/actions")
async def list_actions(session_id: str):
    session = _get_session(session_id)
    return {"actions": [action.to_dict() for action in session.store.all()]}


@router.get("/{session_id}/files")
async def list_files(session_id: str):
    session = _get_session(session_id)
    return {"files": session.tree.snapshot(), "count": session.tree.file_count}


@router.get("/{session_id}/preview")
async def get_preview(session_id: str):
    session = _get_session(session_id)
    primary = session.previews.primary
    return {
        "url": primary.base_url if primary else None,
        "previews": session.previews.list(),
        "bootstrap": session.supervisor.status() if session.supervisor else None,
    }


@router.post("/{session_id}/actions/{key}/abort")
async def abort_action(session_id: str, key: str):
    session = _get_session(session_id)
    if session.store.get(key) is None:
        raise HTTPException(status_code=404, detail=f"Action {key} not found")
    return {"aborted": session.abort(key)}


@router.post("/{session_id}/reset")
async def reset_session(session_id: str):
    session = _get_session(session_id)
    await session.reset()
    return {"success": True}


@router.delete("/{session_id}")
async def delete_session(session_id: str):
    if not await session_manager.remove(session_id):
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return {"success": True}
