"""In-memory registry of live sessions plus the process-wide shared services."""

import logging
from collections import OrderedDict
from functools import lru_cache

from docwriter.core.config import settings
from docwriter.core.exceptions import CredentialError
from docwriter.core.exceptions import SessionBusyError
from docwriter.core.exceptions import SessionNotFoundError
from docwriter.generation_logic.session import GenerationSession
from docwriter.models.session_models import TopicInfo
from docwriter.services.credential_pool import CredentialPool
from docwriter.services.llm import GenerationClient
from docwriter.services.model_chain import ModelChain
from docwriter.services.stage_table import StageFlags
from docwriter.services.storage.state_store import JsonFileStore

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Sessions live only in memory; the oldest idle one is evicted when full."""

    def __init__(self, client: GenerationClient, max_sessions: int | None = None):
        self.client = client
        self.max_sessions = max_sessions if max_sessions is not None else settings.max_sessions
        self._sessions: OrderedDict[str, GenerationSession] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def _evict_one(self) -> None:
        for session_id, session in self._sessions.items():
            if not session.is_streaming:
                del self._sessions[session_id]
                logger.info("Evicted idle session %s", session_id)
                return
        raise SessionBusyError("Too many sessions are generating at the same time")

    def create(self, topic: TopicInfo, flags: StageFlags | None = None) -> GenerationSession:
        if len(self._sessions) >= self.max_sessions:
            self._evict_one()
        session = GenerationSession(topic, self.client, flags=flags)
        self._sessions[session.id] = session
        logger.info("Created session %s for topic '%s'", session.id, topic.topic[:60])
        return session

    def get(self, session_id: str) -> GenerationSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        self._sessions.move_to_end(session_id)
        return session

    def remove(self, session_id: str) -> None:
        session = self.get(session_id)
        session.cancel()
        del self._sessions[session_id]
        logger.info("Removed session %s", session_id)


# ---------------------------------------------------------------------------
# Shared services (FastAPI dependencies)
# ---------------------------------------------------------------------------


@lru_cache
def get_state_store() -> JsonFileStore:
    return JsonFileStore(settings.state_file)


@lru_cache
def get_credential_pool() -> CredentialPool:
    pool = CredentialPool(store=get_state_store())
    if len(pool) == 0 and settings.llm_api_key:
        try:
            pool.add_key(settings.llm_api_key, "Default key")
        except CredentialError:
            logger.exception("Configured LLM_API_KEY could not be added to the credential pool")
    return pool


@lru_cache
def get_model_chain() -> ModelChain:
    return ModelChain(store=get_state_store())


@lru_cache
def get_generation_client() -> GenerationClient:
    return GenerationClient(get_credential_pool(), get_model_chain())


@lru_cache
def get_session_registry() -> SessionRegistry:
    return SessionRegistry(get_generation_client())
