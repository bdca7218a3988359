"""
API routes: thin adapters over the agent loop and the retrieval adapter.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from cardsage.agent.loop import AgentLoop, Turn
from cardsage.agent.providers import ProviderRegistry, get_provider_registry
from cardsage.agent.tools import ToolRegistry, get_tool_registry
from cardsage.api.sse import sse_events
from cardsage.core.errors import RetrievalUnavailableError
from cardsage.schemas.chat import ChatRequest
from cardsage.schemas.search import SearchHitResponse
from cardsage.services.retrieval_service import RetrievalAdapter, get_information_adapter

logger = logging.getLogger(__name__)
router = APIRouter()


# --- System ---

@router.get("/", tags=["system"])
def root():
    return {"status": "CardSage backend running"}


@router.get("/health", tags=["system"])
def health():
    return {"ok": True}


# --- Chat ---

@router.post(
    "/api/chat",
    tags=["chat"],
    summary="Chat with the advisor (SSE stream)",
    description="Stream the answer word-by-word via Server-Sent Events. Events: chunk, tool_call, tool_result, done, error.",
)
def post_chat(
    body: ChatRequest,
    providers: ProviderRegistry = Depends(get_provider_registry),
    tools: ToolRegistry = Depends(get_tool_registry),
) -> StreamingResponse:
    logger.info(
        "[api:post_chat] IN  conversation=%s model=%s messages=%d",
        body.conversation_id, body.model_key, len(body.messages),
    )
    turn = Turn(body.conversation_id, body.model_key, [m.to_message() for m in body.messages])
    agent = AgentLoop(providers, tools)
    return StreamingResponse(
        sse_events(agent, turn),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# --- Search ---

@router.get(
    "/api/search",
    response_model=list[SearchHitResponse],
    response_model_exclude_none=True,
    tags=["search"],
    summary="Search the card index",
    description="Return ranked hits for `query` in backend order. 400 without a query, 503 when search is unavailable.",
)
async def get_search(
    query: str = "",
    adapter: RetrievalAdapter = Depends(get_information_adapter),
) -> list[SearchHitResponse]:
    if not query or not query.strip():
        raise HTTPException(status_code=400, detail="Query parameter 'query' is required")
    try:
        hits = await adapter.search(query.strip())
    except RetrievalUnavailableError as e:
        raise HTTPException(status_code=503, detail=e.message) from e
    return [SearchHitResponse(id=h.id, score=h.score, text=h.text) for h in hits]
