"""
Chat API: POST /chat
"""

from fastapi import APIRouter, HTTPException

from src.api.deps import get_services
from src.api.schemas import ChatRequest, ChatResponse, ResearchOptions
from src.conversation import store as conversation_store
from src.log import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["chat"])

HISTORY_LIMIT = 50


@router.post("/chat", response_model=ChatResponse)
def chat(body: ChatRequest) -> ChatResponse:
    """Route one user message to a provider, or start deep research when confirmed."""
    services = get_services()

    if body.conversation_id:
        if conversation_store.get_conversation(body.conversation_id) is None:
            raise HTTPException(status_code=404, detail=f"Conversation not found: {body.conversation_id}")
        conversation_id = body.conversation_id
    else:
        conversation_id = conversation_store.create_conversation(title=body.message[:80])["id"]

    conversation_store.append_message(conversation_id, "user", body.message)
    history = conversation_store.as_chat_messages(
        conversation_store.history(conversation_id, limit=HISTORY_LIMIT)
    )

    result = services.router.route(
        history,
        explicit_provider_hint=body.service,
        options={"confirm_deep_research": body.confirm_deep_research},
    )

    job = None
    if result.mode == "deep":
        options = (body.research_options or ResearchOptions()).to_options()
        job = services.orchestrator.submit(body.message, options)
        logger.info("[chat] conversation %s started research job %s", conversation_id, job["id"])

    stored = conversation_store.append_message(
        conversation_id,
        "assistant",
        result.response,
        {
            "service": result.provider_used,
            "citations": result.citations,
            "visualization": result.visualization,
        },
    )
    return ChatResponse(
        conversation_id=conversation_id,
        message=stored,
        service=result.provider_used,
        mode=result.mode,
        citations=result.citations,
        visualization=result.visualization,
        attempts=result.attempts,
        job=job,
    )


@router.get("/conversations/{conversation_id}")
def get_conversation(conversation_id: str) -> dict:
    conv = conversation_store.get_conversation(conversation_id)
    if conv is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
    return {"success": True, "conversation": conv, "messages": conversation_store.history(conversation_id)}
