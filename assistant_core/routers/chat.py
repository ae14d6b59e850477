"""
Conversation endpoints.

Sending a message streams the answer as Server-Sent Events: `chunk` events
while the answer is produced, then `final_message` (or `error`), then `done`.
Other endpoints manage conversations and message flags.
"""

import asyncio
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from assistant_core.errors import AssistantCoreError, TurnInProgress
from assistant_core.models import (
    BoundResource,
    ConversationMetadata,
    Message,
    TurnResult,
    new_id,
)
from assistant_core.routers.deps import get_services, get_user_id, verify_api_key
from assistant_core.services.container import AppServices
from assistant_core.utils.logging import get_logger
from assistant_core.utils.sse_utils import (
    sse_format,
    sse_heartbeat,
    sse_retry,
    stream_event_to_sse,
)

router = APIRouter(dependencies=[Depends(verify_api_key)])
logger = get_logger(__name__)

HEARTBEAT_INTERVAL_S = 15.0
POLL_INTERVAL_S = 1.0


class ResourceIn(BaseModel):
    url: str = Field(..., min_length=1, max_length=2048, description="Resource URL")
    content: Optional[str] = Field(None, description="Resource text to summarize")


class CreateConversationRequest(BaseModel):
    title: Optional[str] = Field(None, max_length=255)
    resource: Optional[ResourceIn] = None
    first_message: Optional[str] = Field(
        None, max_length=32000, description="Used to generate a title when none is given"
    )


class SendMessageRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=32000, description="User message")

    model_config = {"json_schema_extra": {"example": {"content": "What is new in .NET 9?"}}}


class RenameRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)


class ReportRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


@router.post(
    "/conversations",
    response_model=ConversationMetadata,
    status_code=status.HTTP_201_CREATED,
    summary="Start a conversation",
)
async def create_conversation(
    body: CreateConversationRequest,
    user_id: str = Depends(get_user_id),  # noqa: B008
    services: AppServices = Depends(get_services),  # noqa: B008
) -> ConversationMetadata:
    resource = BoundResource(**body.resource.model_dump()) if body.resource else None
    return await services.pipeline.start_conversation(
        user_id, body.title, resource, body.first_message
    )


@router.get(
    "/conversations",
    response_model=List[ConversationMetadata],
    summary="List conversations, most recently active first",
)
async def list_conversations(
    user_id: str = Depends(get_user_id),  # noqa: B008
    services: AppServices = Depends(get_services),  # noqa: B008
) -> List[ConversationMetadata]:
    return await services.pipeline.list_conversations(user_id)


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=List[Message],
    summary="Conversation history",
)
async def list_messages(
    conversation_id: str,
    user_id: str = Depends(get_user_id),  # noqa: B008
    services: AppServices = Depends(get_services),  # noqa: B008
) -> List[Message]:
    return await services.pipeline.history(user_id, conversation_id)


@router.post(
    "/conversations/{conversation_id}/messages",
    summary="Send a message",
    description="Streams the answer as SSE; pass stream=false for a JSON response",
    response_model=None,
)
async def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    request: Request,
    stream: bool = Query(True, description="Stream the answer as Server-Sent Events"),
    user_id: str = Depends(get_user_id),  # noqa: B008
    services: AppServices = Depends(get_services),  # noqa: B008
):
    pipeline = services.pipeline
    request_id = getattr(request.state, "request_id", None) or new_id()

    # Reject before any response bytes are sent
    await pipeline.load_session(user_id, conversation_id)
    if pipeline.is_in_flight(conversation_id):
        raise TurnInProgress(conversation_id)

    cancel_event = asyncio.Event()

    if not stream:
        if not _claim_turn(services, conversation_id, cancel_event):
            raise TurnInProgress(conversation_id)
        try:
            result: TurnResult = await pipeline.process_turn(
                user_id, conversation_id, body.content, cancel_event, request_id
            )
        finally:
            _release_turn(services, conversation_id, cancel_event)
        return result

    async def event_generator():
        loop = asyncio.get_running_loop()
        last_heartbeat = loop.time()
        yield sse_retry(5000)

        async with services.broadcaster.subscribe(conversation_id) as queue:
            if not _claim_turn(services, conversation_id, cancel_event):
                busy = TurnInProgress(conversation_id)
                yield _done_event({"status": "failed", **busy.to_dict()}, request_id)
                return
            turn = asyncio.create_task(
                pipeline.process_turn(
                    user_id, conversation_id, body.content, cancel_event, request_id
                )
            )
            getter: Optional[asyncio.Future] = None
            try:
                while True:
                    if await request.is_disconnected():
                        logger.info("Client disconnected, cancelling turn", request_id=request_id)
                        cancel_event.set()
                        break

                    if getter is None:
                        getter = asyncio.ensure_future(queue.get())
                    done, _ = await asyncio.wait(
                        {getter, turn},
                        timeout=POLL_INTERVAL_S,
                        return_when=asyncio.FIRST_COMPLETED,
                    )

                    if getter in done:
                        event = getter.result()
                        getter = None
                        if event.request_id != request_id:
                            continue
                        yield stream_event_to_sse(event)
                        if event.type in ("final_message", "error"):
                            break
                        continue

                    if turn in done and queue.empty():
                        break

                    if loop.time() - last_heartbeat >= HEARTBEAT_INTERVAL_S:
                        last_heartbeat = loop.time()
                        yield sse_heartbeat()

                yield _done_event(await _settle(turn), request_id)
            finally:
                if getter is not None:
                    getter.cancel()
                if not turn.done():
                    cancel_event.set()
                    await asyncio.gather(turn, return_exceptions=True)
                _release_turn(services, conversation_id, cancel_event)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            "X-Request-ID": request_id,
        },
    )


def _claim_turn(services: AppServices, conversation_id: str, cancel_event: asyncio.Event) -> bool:
    """Register this turn's cancel event unless another turn already holds the slot."""
    return services.active_turns.setdefault(conversation_id, cancel_event) is cancel_event


def _release_turn(
    services: AppServices, conversation_id: str, cancel_event: asyncio.Event
) -> None:
    if services.active_turns.get(conversation_id) is cancel_event:
        del services.active_turns[conversation_id]


async def _settle(turn: asyncio.Task) -> Dict[str, Any]:
    try:
        result: TurnResult = await turn
    except AssistantCoreError as e:
        return {"status": "failed", **e.to_dict()}
    except Exception as e:
        logger.error("Turn failed unexpectedly", error=str(e), exc_info=True)
        return {"status": "failed", "error": "APP_UNEXPECTED", "message": str(e)}
    return {
        "status": result.status.value,
        "cache_tier": result.cache_tier,
        "tool_mode": result.tool_mode,
        "token_count": result.token_count,
        "message_id": result.assistant_message.id if result.assistant_message else None,
    }


def _done_event(summary: Dict[str, Any], request_id: str) -> str:
    return sse_format({**summary, "request_id": request_id}, event="done", id=f"{request_id}:done")


@router.post(
    "/conversations/{conversation_id}/cancel",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Cancel the turn in flight",
)
async def cancel_turn(
    conversation_id: str,
    user_id: str = Depends(get_user_id),  # noqa: B008
    services: AppServices = Depends(get_services),  # noqa: B008
) -> Dict[str, bool]:
    await services.pipeline.load_session(user_id, conversation_id)
    event = services.active_turns.get(conversation_id)
    if event is not None:
        event.set()
    return {"cancelled": event is not None}


@router.patch(
    "/conversations/{conversation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Rename a conversation",
)
async def rename_conversation(
    conversation_id: str,
    body: RenameRequest,
    user_id: str = Depends(get_user_id),  # noqa: B008
    services: AppServices = Depends(get_services),  # noqa: B008
) -> Response:
    await services.pipeline.rename(user_id, conversation_id, body.title.strip())
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "/conversations/{conversation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a conversation",
)
async def delete_conversation(
    conversation_id: str,
    user_id: str = Depends(get_user_id),  # noqa: B008
    services: AppServices = Depends(get_services),  # noqa: B008
) -> Response:
    await services.pipeline.delete_conversation(user_id, conversation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/conversations/{conversation_id}/messages/{message_id}/star",
    response_model=Message,
    summary="Toggle the starred flag of a message",
)
async def toggle_star(
    conversation_id: str,
    message_id: str,
    user_id: str = Depends(get_user_id),  # noqa: B008
    services: AppServices = Depends(get_services),  # noqa: B008
) -> Message:
    return await services.pipeline.toggle_star(user_id, conversation_id, message_id)


@router.post(
    "/conversations/{conversation_id}/messages/{message_id}/report",
    response_model=Message,
    summary="Report a message",
)
async def report_message(
    conversation_id: str,
    message_id: str,
    body: ReportRequest,
    user_id: str = Depends(get_user_id),  # noqa: B008
    services: AppServices = Depends(get_services),  # noqa: B008
) -> Message:
    return await services.pipeline.report_message(
        user_id, conversation_id, message_id, body.reason
    )


@router.get(
    "/messages/starred",
    response_model=List[Message],
    summary="Starred messages across all conversations",
)
async def starred_messages(
    user_id: str = Depends(get_user_id),  # noqa: B008
    services: AppServices = Depends(get_services),  # noqa: B008
) -> List[Message]:
    return await services.pipeline.starred_messages(user_id)
