"""
Retrieval-augmented chat orchestration.

Each turn of a session:

1. queries the session's vector store with the user message (when the
   session has a retrieval config)
2. assembles the augmented prompt (system prompt + ranked context + history
   + new user message)
3. invokes text generation through the InferenceRouter, blocking or streaming
4. appends the user message and the full assistant reply to the history

Turns of one session are serialized by the session's FIFO lock, held from
retrieval until the reply is committed (for streams: until the stream is
exhausted, cancelled or fails). A stream that is cancelled or fails commits
nothing unless cancel(commit_partial=True) is used.

Example:
    >>> orchestrator = RagOrchestrator(router, stores={"docs": store})
    >>> session = orchestrator.create_session(
    ...     ChatSessionConfig(retrieval=RetrievalConfig(store_id="docs", top_k=2))
    ... )
    >>> response = await orchestrator.send_turn(session, "How does semantic search work?")
    >>> response.text, [d.id for d in response.documents]
    >>>
    >>> async with await orchestrator.send_turn(session, "Tell me more", stream=True) as tokens:
    ...     async for chunk in tokens:
    ...         print(chunk, end="")
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from ..exceptions import NotFoundError
from ..models import InferencePolicy
from ..router import InferenceRouter, PolicyLike, RoutedStream
from ..settings import ChatSessionConfig
from ..storage.vector_store import ScoredDocument, VectorSimilarityStore
from .prompt import PromptBuilder
from .session import ChatMessage, ChatSession

logger = logging.getLogger(__name__)

SessionLike = Union[ChatSession, str]


@dataclass
class ChatResponse:
    """
    Result of a committed (or attempted) chat turn.

    Attributes:
        text: Full assistant reply.
        documents: Retrieved context, best first.
        prompt: Messages sent to the generator.
        logical_id: Registry key of the adapter that answered.
        model: Model id of that adapter.
        fell_back: True if the policy's fallback origin answered.
        committed: False when the session was closed before the reply landed.
    """

    text: str
    documents: List[ScoredDocument] = field(default_factory=list)
    prompt: List[ChatMessage] = field(default_factory=list)
    logical_id: Optional[str] = None
    model: Optional[str] = None
    fell_back: bool = False
    committed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "documents": [doc.to_dict() for doc in self.documents],
            "logical_id": self.logical_id,
            "model": self.model,
            "fell_back": self.fell_back,
            "committed": self.committed,
        }


def _release_abandoned(lock: asyncio.Lock, session_id: str) -> None:
    # Runs when a TokenStream is garbage collected before it finished
    logger.warning(
        f"Streaming turn on session '{session_id}' was dropped unfinished; "
        f"releasing its turn lock, nothing committed"
    )
    if lock.locked():
        lock.release()


class TokenStream:
    """
    Live token stream of one chat turn.

    Iterate it (``async for``) to receive chunks; ``text`` holds what was
    delivered so far. The turn is committed only when the stream is
    exhausted. Leaving an ``async with`` block early cancels the turn.

    cancel() may be called from any task, also while another task waits in
    ``async for``. The turn lock is released only after the backend stream
    is closed, and the waiting consumer sees the end of the stream. A
    stream dropped unfinished releases the lock when garbage collected.
    """

    def __init__(
        self,
        orchestrator: "RagOrchestrator",
        session: ChatSession,
        message: str,
        documents: List[ScoredDocument],
        prompt: List[ChatMessage],
        routed: RoutedStream,
    ):
        self.session = session
        self.message = message
        self.documents = documents
        self.prompt = prompt
        self._orchestrator = orchestrator
        self._routed = routed
        self._chunks: List[str] = []
        self._done = asyncio.Event()
        self._finished = False
        self.cancelled = False
        self.committed = False
        self._finalizer = weakref.finalize(
            self, _release_abandoned, session.turn_lock, session.id
        )
        self._finalizer.atexit = False

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    @property
    def logical_id(self) -> Optional[str]:
        return self._routed.logical_id

    @property
    def model(self) -> Optional[str]:
        return self._routed.model

    @property
    def fell_back(self) -> bool:
        return self._routed.fell_back

    @property
    def finished(self) -> bool:
        return self._finished

    def __aiter__(self) -> "TokenStream":
        return self

    async def __anext__(self) -> str:
        if self._finished or self.cancelled:
            await self._done.wait()
            raise StopAsyncIteration
        try:
            chunk = await self._routed.__anext__()
        except StopAsyncIteration:
            if self.cancelled:
                await self._done.wait()
            else:
                self._finish(commit=True)
            raise
        except BaseException:
            logger.warning(
                f"Streaming turn on session '{self.session.id}' failed; nothing committed"
            )
            self._finish(commit=False)
            raise
        if self.cancelled:
            # Chunk arrived after cancel(); it is not delivered
            await self._done.wait()
            raise StopAsyncIteration
        self._chunks.append(chunk)
        return chunk

    async def collect(self) -> ChatResponse:
        """Drain the stream and return the committed response."""
        async for _ in self:
            pass
        return self.response()

    async def cancel(self, commit_partial: bool = False) -> None:
        """
        Stop delivery and end the turn.

        Returns once the backend stream is closed and the turn lock is
        released.

        Args:
            commit_partial: Commit the text received so far as the reply.
                By default the history is left unchanged.
        """
        if self._finished or self.cancelled:
            await self._done.wait()
            return
        self.cancelled = True
        try:
            await self._routed.aclose()
        finally:
            if not commit_partial:
                logger.info(f"Streaming turn on session '{self.session.id}' cancelled")
            self._finish(commit=commit_partial)

    def response(self) -> ChatResponse:
        return ChatResponse(
            text=self.text,
            documents=list(self.documents),
            prompt=list(self.prompt),
            logical_id=self.logical_id,
            model=self.model,
            fell_back=self.fell_back,
            committed=self.committed,
        )

    def _finish(self, commit: bool) -> None:
        if self._finished:
            return
        self._finished = True
        self._finalizer.detach()
        try:
            if commit:
                self.committed = self._orchestrator._commit(
                    self.session, self.message, self.response()
                )
        finally:
            self.session.turn_lock.release()
            self._done.set()

    async def __aenter__(self) -> "TokenStream":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if not self._finished:
            await self.cancel()


class RagOrchestrator:
    """
    Owns chat sessions and runs their turns.

    Args:
        router: Router used for text generation.
        stores: Vector stores by id. The mapping is read at each turn, so a
            dict shared with the caller picks up stores registered later.
        default_policy: Policy for turns that pass none. Defaults to the
            router's default policy.
        prompt_builder: Custom prompt assembly (e.g. another context template).
    """

    def __init__(
        self,
        router: InferenceRouter,
        stores: Optional[Mapping[str, VectorSimilarityStore]] = None,
        default_policy: PolicyLike = None,
        prompt_builder: Optional[PromptBuilder] = None,
    ):
        self.router = router
        self.stores = stores if stores is not None else {}
        self.default_policy = (
            InferencePolicy.parse(default_policy) if default_policy is not None else None
        )
        self.prompt_builder = prompt_builder or PromptBuilder()
        self._sessions: Dict[str, ChatSession] = {}

    def create_session(
        self, config: Optional[ChatSessionConfig] = None, session_id: Optional[str] = None
    ) -> ChatSession:
        """Create an ACTIVE session. Raises ValueError if session_id is in use."""
        if session_id is not None and session_id in self._sessions:
            raise ValueError(f"Chat session '{session_id}' already exists")
        session = ChatSession(config, session_id=session_id)
        self._sessions[session.id] = session
        logger.info(
            f"Created chat session '{session.id}' "
            f"(retrieval={session.retrieval.store_id if session.retrieval else None})"
        )
        return session

    def get_session(self, session_id: str) -> ChatSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(session_id, kind="chat session")
        return session

    def sessions(self) -> List[ChatSession]:
        return list(self._sessions.values())

    def _session(self, session: SessionLike) -> ChatSession:
        return self.get_session(session) if isinstance(session, str) else session

    async def close_session(self, session: SessionLike) -> None:
        """Close a session and forget it. Idempotent."""
        if isinstance(session, str):
            session = self._sessions.get(session)
            if session is None:
                return
        self._sessions.pop(session.id, None)
        if session.is_active:
            session.close()
            logger.info(f"Closed chat session '{session.id}'")

    async def close_all(self) -> None:
        for session in list(self._sessions.values()):
            await self.close_session(session)

    async def retrieve(self, session: ChatSession, message: str) -> List[ScoredDocument]:
        """
        Query the session's store for context.

        Raises:
            NotFoundError: The configured store is not registered.
        """
        retrieval = session.retrieval
        if retrieval is None:
            return []
        store = self.stores.get(retrieval.store_id)
        if store is None:
            raise NotFoundError(retrieval.store_id, kind="vector store")
        documents = await store.query(
            message,
            top_k=retrieval.top_k,
            min_similarity=retrieval.min_similarity,
            metadata_filter=retrieval.metadata_filter,
        )
        logger.debug(
            f"Retrieved {len(documents)} document(s) from '{retrieval.store_id}' "
            f"for session '{session.id}'"
        )
        return documents

    async def send_turn(
        self,
        session: SessionLike,
        message: str,
        stream: bool = False,
        policy: PolicyLike = None,
    ) -> Union[ChatResponse, TokenStream]:
        """
        Run one turn.

        Args:
            session: Session or session id.
            message: User message.
            stream: Return a TokenStream instead of waiting for the full reply.
                The session's turn lock stays held until the stream finishes,
                so consume or cancel it.
            policy: Routing policy for this turn.

        Raises:
            SessionClosedError: The session is closed.
            NotFoundError: Unknown session id or retrieval store.
            InferenceError / InferenceExhaustedError: Generation failed; the
                history is left unchanged.
        """
        session = self._session(session)
        session.ensure_active()
        policy = policy if policy is not None else self.default_policy

        await session.turn_lock.acquire()
        handed_off = False
        try:
            session.ensure_active()
            documents = await self.retrieve(session, message)
            prompt = self.prompt_builder.build(session, message, documents)

            if stream:
                routed = self.router.stream_generate(prompt, session.generation, policy)
                handed_off = True
                return TokenStream(self, session, message, documents, prompt, routed)

            outcome = await self.router.generate(prompt, session.generation, policy)
            response = ChatResponse(
                text=outcome.value.text,
                documents=documents,
                prompt=prompt,
                logical_id=outcome.logical_id,
                model=outcome.value.model,
                fell_back=outcome.fell_back,
            )
            response.committed = self._commit(session, message, response)
            return response
        finally:
            # A TokenStream releases the lock when it finishes
            if not handed_off:
                session.turn_lock.release()

    def _commit(self, session: ChatSession, message: str, response: ChatResponse) -> bool:
        if not session.is_active:
            logger.warning(
                f"Chat session '{session.id}' was closed during a turn; reply not committed"
            )
            return False
        user = ChatMessage.user(message, retrieved=[doc.id for doc in response.documents])
        assistant = ChatMessage.assistant(
            response.text,
            logical_id=response.logical_id,
            model=response.model,
            fell_back=response.fell_back,
        )
        session.commit_turn(user, assistant)
        logger.debug(f"Committed turn {len(session.history) // 2} of session '{session.id}'")
        return True


__all__ = ["ChatResponse", "RagOrchestrator", "TokenStream"]
