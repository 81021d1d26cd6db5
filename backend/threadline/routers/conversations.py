"""
Thread metadata routes.
"""

from fastapi import APIRouter, Depends, Request

from ..schemas.conversation import ThreadResponse, ThreadUpdate
from ..schemas.quota import Identity
from ..services.persistence import PersistenceBridge
from ..utils.security import get_identity


router = APIRouter(prefix="/api/conversations", tags=["Conversations"])


def get_persistence(request: Request) -> PersistenceBridge:
    return request.app.state.persistence


@router.get("/{thread_id}", response_model=ThreadResponse)
async def get_conversation(
    thread_id: str,
    identity: Identity = Depends(get_identity),
    persistence: PersistenceBridge = Depends(get_persistence)
):
    """Thread metadata, including the resume token of a running generation."""
    return await persistence.get_thread(thread_id, identity)


@router.put("/{thread_id}", response_model=ThreadResponse)
async def update_conversation(
    thread_id: str,
    updates: ThreadUpdate,
    identity: Identity = Depends(get_identity),
    persistence: PersistenceBridge = Depends(get_persistence)
):
    """Rename a thread."""
    return await persistence.update_thread_title(thread_id, updates.title.strip(), identity)
