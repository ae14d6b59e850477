"""
Per-turn orchestration of caching, tool selection and generation.

A turn moves through:

    Received → OwnershipCheck → CacheLookup → (Hit → Deliver | Miss → Generating)
    → Completed → Persisted

with terminal Rejected (ownership, turn already in flight), Failed
(generation error) and Cancelled states. Chunks reach the transport through a
bounded channel drained by a single forwarder; the turn is persisted to the
durable store first and mirrored into the session cache second.
"""

import asyncio
from typing import Any, Dict, List, Optional, Set

from assistant_core.config import Settings
from assistant_core.errors import (
    GenerationFailed,
    MessageNotFound,
    OwnershipViolation,
    ToolError,
    TurnInProgress,
)
from assistant_core.models import (
    DEFAULT_TITLE,
    MAX_TITLE_LENGTH,
    BoundResource,
    ConversationMetadata,
    ConversationSession,
    Message,
    ReportInfo,
    Role,
    TurnResult,
    TurnStatus,
    new_id,
)
from assistant_core.services.interfaces import (
    DurableStore,
    GenerationEngine,
    StreamEvent,
    Transport,
)
from assistant_core.services.response_cache import CacheHit, ResponseCache
from assistant_core.services.session_cache import SessionCache
from assistant_core.services.streaming import ChunkChannel, replay_chunks
from assistant_core.services.tool_router import ToolRouter
from assistant_core.utils.logging import (
    clear_turn_context,
    get_logger,
    set_turn_context,
)

logger = get_logger(__name__)


class ConversationPipeline:
    """
    Orchestrates one user turn end to end.

    Args:
        settings: Streaming, ceiling and timeout configuration
        store: Durable conversation store (source of truth)
        session_cache: Cache of live conversation state
        response_cache: Exact / semantic / resource answer cache
        tool_router: Tool catalog selection and dispatch
        engine: Streaming generation engine
        transport: Broadcast target for stream events
    """

    def __init__(
        self,
        settings: Settings,
        store: DurableStore,
        session_cache: SessionCache,
        response_cache: ResponseCache,
        tool_router: ToolRouter,
        engine: GenerationEngine,
        transport: Transport,
    ):
        self.settings = settings
        self.store = store
        self.session_cache = session_cache
        self.response_cache = response_cache
        self.tool_router = tool_router
        self.engine = engine
        self.transport = transport
        self._in_flight: Set[str] = set()

    def is_in_flight(self, conversation_id: str) -> bool:
        return conversation_id in self._in_flight

    # ===== Session access =====

    async def load_session(self, user_id: str, conversation_id: str) -> ConversationSession:
        """
        Session for a conversation owned by user_id.

        Served from the session cache when possible; otherwise loaded from the
        durable store and cached.

        Raises:
            OwnershipViolation: The conversation does not exist for this user
        """

        async def loader() -> Optional[ConversationSession]:
            metadata = await self.store.get_conversation(conversation_id, user_id)
            if metadata is None:
                return None
            messages = await self.store.list_messages(conversation_id)
            return ConversationSession(metadata=metadata, messages=messages)

        session = await self.session_cache.get_or_load(user_id, conversation_id, loader)
        if session is None or session.user_id != user_id:
            logger.warning(
                "Conversation ownership check failed",
                conversation_id=conversation_id,
                user_id=user_id,
            )
            raise OwnershipViolation(conversation_id)
        return session

    async def _append(
        self, user_id: str, conversation_id: str, message: Message
    ) -> ConversationMetadata:
        metadata = await self.store.append_message(conversation_id, message)
        await self.session_cache.append_message(user_id, conversation_id, message)
        return metadata

    async def _mark_context_full_if_needed(
        self,
        user_id: str,
        conversation_id: str,
        metadata: ConversationMetadata,
        token_count: int,
    ) -> bool:
        if metadata.is_context_full:
            return False
        if (
            metadata.message_count < self.settings.context_message_ceiling
            and token_count < self.settings.context_token_ceiling
        ):
            return False

        await self.store.update_metadata(conversation_id, {"is_context_full": True})
        await self.session_cache.set_context_full(user_id, conversation_id)
        logger.info(
            "Conversation context is full",
            message_count=metadata.message_count,
            token_count=token_count,
        )
        return True

    async def _emit(
        self,
        conversation_id: str,
        event_type: str,
        data: Any,
        request_id: str,
        sequence: int = 0,
    ) -> None:
        try:
            await self.transport.broadcast(
                conversation_id,
                StreamEvent(
                    type=event_type, data=data, request_id=request_id, sequence=sequence
                ),
            )
        except Exception as e:
            logger.warning("Broadcast failed", event_type=event_type, error=str(e))

    # ===== Turn processing =====

    async def process_turn(
        self,
        user_id: str,
        conversation_id: str,
        content: str,
        cancel_event: Optional[asyncio.Event] = None,
        request_id: Optional[str] = None,
    ) -> TurnResult:
        """
        Answer one user message, streaming chunks to the transport.

        Raises:
            OwnershipViolation: Conversation unknown or not owned by user_id
            TurnInProgress: Another turn is generating for this conversation
            GenerationFailed: The engine failed; partial output was persisted
        """
        request_id = request_id or new_id()
        set_turn_context(
            request_id=request_id, conversation_id=conversation_id, user_id=user_id
        )
        try:
            await self.load_session(user_id, conversation_id)

            if conversation_id in self._in_flight:
                logger.warning("Turn rejected, another turn in flight")
                raise TurnInProgress(conversation_id)
            self._in_flight.add(conversation_id)

            try:
                # Re-read after reserving so the context includes the previous turn
                session = await self.load_session(user_id, conversation_id)
                return await self._run_turn(
                    user_id,
                    session,
                    content,
                    cancel_event or asyncio.Event(),
                    request_id,
                )
            finally:
                self._in_flight.discard(conversation_id)
        finally:
            clear_turn_context()

    async def _run_turn(
        self,
        user_id: str,
        session: ConversationSession,
        content: str,
        cancel_event: asyncio.Event,
        request_id: str,
    ) -> TurnResult:
        conversation_id = session.id

        async def forward(chunk: str, sequence: int) -> None:
            await self.transport.broadcast(
                conversation_id,
                StreamEvent(
                    type="chunk",
                    data={"content": chunk},
                    request_id=request_id,
                    sequence=sequence,
                ),
            )

        channel = ChunkChannel(
            forward, maxsize=self.settings.chunk_channel_size, cancel_event=cancel_event
        ).start()
        try:
            return await self._answer(user_id, session, content, channel, request_id)
        finally:
            # No-op unless an unexpected error skipped close/abort
            await channel.abort()

    async def _answer(
        self,
        user_id: str,
        session: ConversationSession,
        content: str,
        channel: ChunkChannel,
        request_id: str,
    ) -> TurnResult:
        conversation_id = session.id
        context = list(session.messages)
        depth = len(context)
        resource = session.metadata.resource
        resource_turn = resource is not None and session.metadata.message_count == 0
        cancel_event = channel.cancel_event

        logger.info("Turn received", depth=depth, resource_turn=resource_turn)

        hit: Optional[CacheHit] = None
        if not cancel_event.is_set():
            if resource_turn:
                cached = await self.response_cache.get_resource(resource.url)
                if cached is not None:
                    hit = CacheHit(tier="resource", response=cached, key=resource.url)
            else:
                hit = await self.response_cache.lookup(context, content)

        if hit is not None:
            return await self._deliver_cached(
                user_id, conversation_id, content, hit, channel, request_id
            )

        user_message = Message(conversation_id=conversation_id, role=Role.USER, content=content)
        await self._append(user_id, conversation_id, user_message)

        mode, catalog = self.tool_router.select_tools(content)

        async def invoke_tool(tool_name: str, arguments: Dict[str, Any]) -> Any:
            try:
                return await self.tool_router.invoke(tool_name, arguments)
            except ToolError as e:
                return e.to_dict()

        generation = asyncio.create_task(
            asyncio.wait_for(
                self.engine.generate_streaming(
                    context,
                    content,
                    catalog,
                    channel.put,
                    invoke_tool,
                    resource=resource if resource_turn else None,
                ),
                self.settings.generation_timeout_seconds,
            )
        )
        cancelled = asyncio.create_task(cancel_event.wait())

        try:
            await asyncio.wait(
                {generation, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            # The caller's task was cancelled: treat it like a cancel request
            cancel_event.set()
            generation.cancel()
            cancelled.cancel()
            await channel.abort()
            await self._persist_partial(user_id, conversation_id, channel.text)
            raise

        if not generation.done() or cancel_event.is_set():
            generation.cancel()
            cancelled.cancel()
            await asyncio.gather(generation, return_exceptions=True)
            await channel.abort()
            partial = await self._persist_partial(user_id, conversation_id, channel.text)
            logger.info("Turn cancelled", partial_length=len(channel.text))
            return TurnResult(
                status=TurnStatus.CANCELLED,
                user_message=user_message,
                assistant_message=partial,
                tool_mode=mode.value,
            )

        cancelled.cancel()

        try:
            text, token_count = generation.result()
        except Exception as e:
            await channel.close()
            failure = await self._fail_turn(user_id, conversation_id, channel, request_id, e)
            raise failure from e

        await channel.close()

        assistant_message = Message(
            conversation_id=conversation_id,
            role=Role.ASSISTANT,
            content=text,
            token_count=token_count,
        )
        metadata = await self._append(user_id, conversation_id, assistant_message)
        await self._mark_context_full_if_needed(
            user_id, conversation_id, metadata, token_count
        )

        if resource_turn:
            await self.response_cache.store_resource(resource.url, text)
        else:
            await self.response_cache.store(context, content, text)

        await self._emit(
            conversation_id,
            "final_message",
            assistant_message.model_dump(mode="json"),
            request_id,
            sequence=channel.forwarded,
        )
        logger.info(
            "Turn completed",
            tool_mode=mode.value,
            tools_offered=len(catalog),
            token_count=token_count,
            chunks=channel.forwarded,
        )
        return TurnResult(
            status=TurnStatus.COMPLETED,
            user_message=user_message,
            assistant_message=assistant_message,
            tool_mode=mode.value,
            token_count=token_count,
        )

    async def _deliver_cached(
        self,
        user_id: str,
        conversation_id: str,
        content: str,
        hit: CacheHit,
        channel: ChunkChannel,
        request_id: str,
    ) -> TurnResult:
        """Replay a cached answer as chunks and persist the turn."""
        try:
            await replay_chunks(
                channel,
                hit.response,
                self.settings.stream_chunk_words,
                self.settings.stream_chunk_delay_ms,
            )
        finally:
            if channel.cancel_event.is_set():
                await channel.abort()
            else:
                await channel.close()

        user_message = Message(conversation_id=conversation_id, role=Role.USER, content=content)
        await self._append(user_id, conversation_id, user_message)

        if channel.cancel_event.is_set():
            partial = await self._persist_partial(user_id, conversation_id, channel.text)
            logger.info("Cached turn cancelled", tier=hit.tier)
            return TurnResult(
                status=TurnStatus.CANCELLED,
                user_message=user_message,
                assistant_message=partial,
                cache_tier=hit.tier,
            )

        assistant_message = Message(
            conversation_id=conversation_id, role=Role.ASSISTANT, content=hit.response
        )
        metadata = await self._append(user_id, conversation_id, assistant_message)
        await self._mark_context_full_if_needed(user_id, conversation_id, metadata, 0)

        await self._emit(
            conversation_id,
            "final_message",
            assistant_message.model_dump(mode="json"),
            request_id,
            sequence=channel.forwarded,
        )
        logger.info("Turn served from cache", tier=hit.tier, chunks=channel.forwarded)
        return TurnResult(
            status=TurnStatus.CACHED,
            user_message=user_message,
            assistant_message=assistant_message,
            cache_tier=hit.tier,
        )

    async def _persist_partial(
        self, user_id: str, conversation_id: str, text: str
    ) -> Optional[Message]:
        if not text or not self.settings.persist_partial_on_cancel:
            return None
        message = Message(
            conversation_id=conversation_id,
            role=Role.ASSISTANT,
            content=text,
            truncated=True,
        )
        await self._append(user_id, conversation_id, message)
        return message

    async def _fail_turn(
        self,
        user_id: str,
        conversation_id: str,
        channel: ChunkChannel,
        request_id: str,
        error: Exception,
    ) -> GenerationFailed:
        """Persist what was produced and tell the client; returns the error to raise."""
        partial_id = None
        if channel.has_output:
            message = Message(
                conversation_id=conversation_id,
                role=Role.ASSISTANT,
                content=channel.text,
                truncated=True,
            )
            await self._append(user_id, conversation_id, message)
            partial_id = message.id

        reason = (
            "Generation timed out"
            if isinstance(error, asyncio.TimeoutError)
            else f"Generation failed: {error}"
        )
        logger.error(
            "Generation failed",
            error=str(error),
            error_type=type(error).__name__,
            partial_length=len(channel.text),
        )
        failure = GenerationFailed(reason, partial_content=channel.text, message_id=partial_id)
        await self._emit(
            conversation_id,
            "error",
            {**failure.to_dict(), "partial_message_id": partial_id},
            request_id,
            sequence=channel.forwarded,
        )
        return failure

    # ===== Conversation management =====

    async def _generate_title(self, first_message: str) -> str:
        """Model-written title for a new conversation, or the default on any failure."""
        try:
            title = await asyncio.wait_for(
                self.engine.generate_title(first_message),
                self.settings.title_timeout_seconds,
            )
        except Exception as e:
            logger.warning(
                "Title generation failed, using default",
                error=str(e),
                error_type=type(e).__name__,
            )
            return DEFAULT_TITLE

        title = " ".join((title or "").split()).strip("\"'")
        return title[:MAX_TITLE_LENGTH] or DEFAULT_TITLE

    async def start_conversation(
        self,
        user_id: str,
        title: Optional[str] = None,
        resource: Optional[BoundResource] = None,
        first_message: Optional[str] = None,
    ) -> ConversationMetadata:
        """
        Create a conversation.

        Without an explicit title, one is generated from first_message when
        given; otherwise the default title is used.
        """
        if not title and first_message:
            title = await self._generate_title(first_message)
        metadata = await self.store.create_conversation(
            user_id, title or DEFAULT_TITLE, resource
        )
        await self.session_cache.put(
            user_id, metadata.id, ConversationSession(metadata=metadata)
        )
        logger.info(
            "Conversation created",
            conversation_id=metadata.id,
            user_id=user_id,
            resource_bound=resource is not None,
        )
        return metadata

    async def list_conversations(self, user_id: str) -> List[ConversationMetadata]:
        return await self.store.list_conversations(user_id)

    async def history(self, user_id: str, conversation_id: str) -> List[Message]:
        session = await self.load_session(user_id, conversation_id)
        return session.messages

    async def rename(self, user_id: str, conversation_id: str, title: str) -> None:
        await self.load_session(user_id, conversation_id)
        await self.store.update_metadata(conversation_id, {"title": title})
        await self.session_cache.rename_title(user_id, conversation_id, title)

    async def toggle_star(
        self, user_id: str, conversation_id: str, message_id: str
    ) -> Message:
        session = await self.load_session(user_id, conversation_id)
        message = session.find_message(message_id)
        if message is None:
            raise MessageNotFound(f"Message '{message_id}' not found")

        updated = await self.store.update_message_flags(
            conversation_id, message_id, {"starred": not message.starred}
        )
        if updated is None:
            raise MessageNotFound(f"Message '{message_id}' not found")
        await self.session_cache.toggle_star(user_id, conversation_id, message_id)
        return updated

    async def report_message(
        self, user_id: str, conversation_id: str, message_id: str, reason: str
    ) -> Message:
        session = await self.load_session(user_id, conversation_id)
        if session.find_message(message_id) is None:
            raise MessageNotFound(f"Message '{message_id}' not found")

        updated = await self.store.update_message_flags(
            conversation_id, message_id, {"reported": ReportInfo(reason=reason)}
        )
        if updated is None:
            raise MessageNotFound(f"Message '{message_id}' not found")
        await self.session_cache.mark_reported(user_id, conversation_id, message_id, reason)
        logger.info("Message reported", message_id=message_id, reason=reason)
        return updated

    async def delete_conversation(self, user_id: str, conversation_id: str) -> None:
        if conversation_id in self._in_flight:
            raise TurnInProgress(conversation_id)
        await self.load_session(user_id, conversation_id)
        await self.store.delete_conversation(conversation_id)
        await self.session_cache.delete(user_id, conversation_id)
        logger.info("Conversation deleted", conversation_id=conversation_id)

    async def starred_messages(self, user_id: str) -> List[Message]:
        """
        Starred messages across all of the user's conversations.

        Read from the durable store so expired sessions are included; the
        cached sessions answer only while the store is unreachable.
        """
        try:
            return await self.store.list_starred_messages(user_id)
        except Exception as e:
            logger.warning(
                "Durable store unavailable for starred messages, using session cache",
                user_id=user_id,
                error=str(e),
            )
            return await self.session_cache.starred_messages(user_id)
