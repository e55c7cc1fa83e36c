"""
Memory system factory. Wires the tiers, the prompt assembler and the background
runner around one completion client and one session factory.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .core.config import MemoryConfig, get_settings
from .core.database import get_session_factory, init_db, close_db, session_scope
from .core.flags import get_flags
from .core.redis import close_redis
from .orchestrator import orchestrator
from .services import llm as default_llm
from .services import realtime
from .services.background import BackgroundTaskRunner
from .services.episodic import ConsolidationResult, EpisodicSemanticMemory
from .services.medium_term import MediumTermMemoryStore
from .services.prompt_context import PromptContextAssembler
from .services.short_term import ShortTermMemory

logger = logging.getLogger(__name__)


@dataclass
class MemorySystem:
    config: MemoryConfig
    short_term: ShortTermMemory
    medium_term: MediumTermMemoryStore
    episodic: EpisodicSemanticMemory
    assembler: PromptContextAssembler
    runner: BackgroundTaskRunner
    llm: Any
    session_factory: async_sessionmaker[AsyncSession]

    async def handle_message(
        self, db: AsyncSession, project_id: int, user_id: str, message: str
    ) -> dict:
        return await orchestrator.handle_message(db, self, project_id, user_id, message)

    async def run_consolidation(self, conversation_id: int) -> Optional[ConsolidationResult]:
        """One Tier 3 pass in its own unit of work. Failures roll back and propagate."""
        async with session_scope(self.session_factory) as db:
            outcome = await self.episodic.consolidate(db, conversation_id)

        if outcome:
            episode = outcome.episode
            await realtime.episode_created(episode.user_id, episode.id, conversation_id)
            await realtime.facts_extracted(
                episode.user_id, episode.id, outcome.created, outcome.reinforced
            )
        return outcome

    def schedule_consolidation(self, conversation_id: int):
        return self.runner.submit(
            "consolidate",
            lambda: self.run_consolidation(conversation_id),
            key=f"conversation:{conversation_id}",
        )

    async def startup(self):
        settings = get_settings()
        logging.basicConfig(
            level=getattr(logging, settings.log_level.upper(), logging.INFO),
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
        logger.info("Starting persona memory (env=%s)", settings.env)

        await init_db(self.session_factory.kw.get("bind"))

        flags = get_flags()
        logger.info(
            "Flags: redis=%s llm=%s long_term_memory=%s",
            flags.use_redis, flags.llm_provider, flags.enable_long_term_memory,
        )

    async def shutdown(self):
        logger.info("Shutting down persona memory")
        await self.runner.drain()
        if self.llm is default_llm:
            await default_llm.close_client()
        await close_db()
        await close_redis()


def create_memory_system(
    config: Optional[MemoryConfig] = None,
    llm_client: Any = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> MemorySystem:
    config = config or get_settings().memory_config()
    client = llm_client or default_llm

    return MemorySystem(
        config=config,
        short_term=ShortTermMemory(config, llm=client),
        medium_term=MediumTermMemoryStore(config),
        episodic=EpisodicSemanticMemory(config, llm=client),
        assembler=PromptContextAssembler(config),
        runner=BackgroundTaskRunner(),
        llm=client,
        session_factory=session_factory or get_session_factory(),
    )
