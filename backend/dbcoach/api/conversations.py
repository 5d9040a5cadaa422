"""
Saved Conversations API Routes
==============================

- GET    /api/v1/conversations                       - List or search saved conversations
- GET    /api/v1/conversations/{id}                  - Conversation with content
- GET    /api/v1/conversations/{id}/artifacts/{task} - Parsed artifacts for one stage
- DELETE /api/v1/conversations/{id}                  - Delete a conversation
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from dbcoach.core.database import AsyncSessionLocal
from dbcoach.core.models import DatabaseType
from dbcoach.core.schemas import ConversationDetail, ConversationSummary, MessageResponse
from dbcoach.core.streaming.content_parser import parse_content
from dbcoach.core.streaming.persistence import ConversationStore

router = APIRouter(prefix="/api/v1/conversations", tags=["conversations"])


def get_conversation_store() -> ConversationStore:
    return ConversationStore(AsyncSessionLocal)


@router.get("", response_model=List[ConversationSummary])
async def list_conversations(
    q: Optional[str] = Query(None, min_length=1, description="Search title and prompt"),
    database_type: Optional[DatabaseType] = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    store: ConversationStore = Depends(get_conversation_store),
):
    if q:
        return await store.search(q, limit=limit)
    return await store.list(limit=limit, offset=offset, database_type=database_type)


@router.get("/{conversation_id}", response_model=ConversationDetail)
async def get_conversation(
    conversation_id: str,
    store: ConversationStore = Depends(get_conversation_store),
):
    conversation = await store.get(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@router.get("/{conversation_id}/artifacts/{task_id}")
async def get_conversation_artifacts(
    conversation_id: str,
    task_id: str,
    store: ConversationStore = Depends(get_conversation_store),
) -> Dict[str, Any]:
    """Re-parse stored stage content into structured artifacts."""
    conversation = await store.get(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    content = conversation.generated_content.get(task_id)
    if content is None:
        raise HTTPException(status_code=404, detail=f"No content for task {task_id}")

    artifacts = parse_content(content, conversation.database_type)
    return {
        "conversation_id": conversation.id,
        "task_id": task_id,
        "content": content,
        "artifacts": artifacts.to_dict(),
    }


@router.delete("/{conversation_id}", response_model=MessageResponse)
async def delete_conversation(
    conversation_id: str,
    store: ConversationStore = Depends(get_conversation_store),
):
    deleted = await store.delete(conversation_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return MessageResponse(message=f"Conversation {conversation_id} deleted")
