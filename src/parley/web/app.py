from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from parley.bootstrap import build_app
from parley.core import sse
from parley.core.chat_service import ChatService, Outcome, StreamSession
from parley.core.errors import NotFoundError, ProviderError, ValidationError
from parley.core.streams import CancelScope
from parley.web.schemas import (
    ChatCompletionRequest,
    ChatResponse,
    ClearResponse,
    ConversationOut,
    FeedbackRequest,
    FeedbackResponse,
    RegenerateRequest,
    StopRequest,
    StopResponse,
)

DISCONNECT_POLL_SECONDS = 0.1


async def _watch_disconnect(request: Request, scope: CancelScope, poll_s: float = DISCONNECT_POLL_SECONDS) -> None:
    while not scope.cancelled:
        if await request.is_disconnected():
            logger.info("client disconnected; cancelling stream")
            scope.cancel()
            return
        await asyncio.sleep(poll_s)


def _event_stream(request: Request, session: StreamSession, scope: CancelScope) -> StreamingResponse:
    async def body():
        watcher = asyncio.create_task(_watch_disconnect(request, scope))
        try:
            async for chunk in session.events:
                yield chunk
        finally:
            watcher.cancel()
            # Finalizes the message as stopped if the transport went away mid-stream.
            await session.events.aclose()

    headers = {
        **sse.SSE_HEADERS,
        "X-Conversation-Id": session.conversation_id,
        "X-Message-Id": session.message_id,
    }
    return StreamingResponse(body(), media_type=sse.SSE_MEDIA_TYPE, headers=headers)


def _respond(request: Request, outcome: Outcome, scope: CancelScope):
    if isinstance(outcome, StreamSession):
        return _event_stream(request, outcome, scope)
    return ChatResponse(conversation_id=outcome.conversation_id, message_id=outcome.message_id, content=outcome.content)


def create_app(config_path: Optional[Path] = None, *, context: Optional[Dict[str, Any]] = None) -> FastAPI:
    """
    Build the HTTP app from a config file, or from an already-built
    bootstrap context (see parley.bootstrap.build_app).
    """
    if context is None:
        if config_path is None:
            raise ValueError("create_app needs a config_path or a bootstrap context")
        context = build_app(Path(config_path))

    cfg = context["cfg"]
    service: ChatService = context["service"]
    default_stream = bool((cfg.get("runtime") or {}).get("stream", False))

    app = FastAPI(title="parley")
    app.state.cfg = cfg
    app.state.service = service
    app.state.registry = context["registry"]
    app.state.warnings = context.get("warnings") or []

    @app.exception_handler(ValidationError)
    async def _validation_error(_request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def _not_found(_request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ProviderError)
    async def _provider_error(_request: Request, exc: ProviderError):
        logger.error("provider error: {}", exc)
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.get("/api/config")
    async def api_config():
        return {
            "default_model": context.get("default_model"),
            "stream": default_stream,
            "models": await service.list_models(),
            "warnings": app.state.warnings,
        }

    @app.get("/api/models")
    async def api_models():
        return {"models": await service.list_models()}

    @app.post("/api/chat/completions")
    async def api_chat_completions(req: ChatCompletionRequest, request: Request):
        scope = CancelScope()
        outcome = await service.start(
            req.model_id,
            req.messages,
            conversation_id=req.conversation_id,
            stream=default_stream if req.stream is None else req.stream,
            scope=scope,
        )
        return _respond(request, outcome, scope)

    @app.post("/api/messages/stop", response_model=StopResponse)
    async def api_stop(req: StopRequest):
        result = await service.stop(req.message_id)
        return StopResponse(message_id=result.message_id, content=result.content)

    @app.post("/api/messages/regenerate")
    async def api_regenerate(req: RegenerateRequest, request: Request):
        scope = CancelScope()
        outcome = await service.regenerate(
            req.message_id,
            stream=default_stream if req.stream is None else req.stream,
            scope=scope,
        )
        return _respond(request, outcome, scope)

    @app.post("/api/messages/feedback", response_model=FeedbackResponse)
    async def api_feedback(req: FeedbackRequest):
        fb = await service.submit_feedback(
            req.message_id,
            req.type,
            categories=req.categories,
            comment=req.comment,
            expected_answer=req.expected_answer,
        )
        return FeedbackResponse(feedback_id=fb.id, message_id=fb.message_id)

    @app.get("/api/conversations")
    async def api_conversations():
        convs = await service.list_conversations()
        return {"conversations": [ConversationOut.from_record(c) for c in convs]}

    @app.get("/api/conversations/{conversation_id}", response_model=ConversationOut)
    async def api_conversation(conversation_id: str):
        conv, messages = await service.get_conversation(conversation_id)
        return ConversationOut.from_record(conv, messages)

    @app.post("/api/conversations/{conversation_id}/clear", response_model=ClearResponse)
    async def api_clear(conversation_id: str):
        deleted = await service.clear_conversation(conversation_id)
        return ClearResponse(conversation_id=conversation_id, deleted=deleted)

    @app.delete("/api/conversations/{conversation_id}")
    async def api_delete(conversation_id: str):
        await service.delete_conversation(conversation_id)
        return {"conversation_id": conversation_id, "deleted": True}

    return app


def run(
    *,
    config: Path,
    host: Optional[str] = None,
    port: Optional[int] = None,
) -> None:
    import uvicorn

    context = build_app(Path(config))
    server = context["cfg"]["server"]
    app = create_app(context=context)
    uvicorn.run(app, host=host or server["host"], port=port or server["port"], log_level="warning")
