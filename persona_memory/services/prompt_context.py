"""
Prompt assembly: persona framing + the three memory tiers + the user's message.

Message layout:
  1. system     persona template and project facts
  2. user       [CONTEXT ...] block: long-term, then medium-term, then short-term
  3. assistant  acknowledgement of the context
  4. user       the actual message

Steps 2 and 3 are omitted when every tier is empty.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from ..core.config import MemoryConfig
from ..models.memory import ProjectMemory
from ..models.project import Persona, Project
from . import llm
from .medium_term import MediumTermMemoryStore
from .short_term import ShortTermContext, ShortTermMemory

logger = logging.getLogger(__name__)

CONTEXT_PREAMBLE = "[CONTEXT - This is background information to inform your responses]\n\n"
CONTEXT_ACK = "I understand the context. I'm ready to continue our conversation."


@dataclass
class BudgetedContext:
    long_term_text: str = ""
    medium_term_entries: list[ProjectMemory] = field(default_factory=list)
    trimmed_long_term_lines: int = 0
    trimmed_medium_term_entries: int = 0

    @property
    def trimmed(self) -> bool:
        return bool(self.trimmed_long_term_lines or self.trimmed_medium_term_entries)


class PromptContextAssembler:
    def __init__(self, config: MemoryConfig):
        self.config = config

    @staticmethod
    def build_system_prompt(persona: Persona, project: Project) -> str:
        parts = [persona.system_prompt.strip()] if persona.system_prompt else []

        facts = ["PROJECT CONTEXT:", f"- Title: {project.title}"]
        if project.description:
            facts.append(f"- Description: {project.description}")
        facts.append(f"- Status: {project.status}")
        parts.append("\n".join(facts))

        return "\n\n".join(parts)

    @staticmethod
    def _context_block(
        long_term_text: str,
        medium_term_entries: list[ProjectMemory],
        short_term_context: Optional[ShortTermContext],
    ) -> str:
        block = long_term_text or ""
        if medium_term_entries:
            block += MediumTermMemoryStore.format_for_prompt(medium_term_entries)
        if short_term_context:
            block += ShortTermMemory.format_for_prompt(short_term_context)
        return block

    @staticmethod
    def _layout(system_prompt: str, block: str, user_message: str) -> list[dict]:
        messages = [{"role": "system", "content": system_prompt}]
        if block:
            messages.append({"role": "user", "content": CONTEXT_PREAMBLE + block})
            messages.append({"role": "assistant", "content": CONTEXT_ACK})
        if user_message:
            messages.append({"role": "user", "content": user_message})
        return messages

    def _estimate(
        self,
        system_prompt: str,
        long_term_text: str,
        medium_term_entries: list[ProjectMemory],
        short_term_context: Optional[ShortTermContext],
        user_message: str,
    ) -> int:
        block = self._context_block(long_term_text, medium_term_entries, short_term_context)
        return llm.estimate_messages_tokens(self._layout(system_prompt, block, user_message))

    def fit_to_budget(
        self,
        system_prompt: str,
        short_term_context: Optional[ShortTermContext],
        medium_term_entries: list[ProjectMemory],
        long_term_text: str,
        user_message: str,
    ) -> BudgetedContext:
        """
        Shrink the droppable tiers until the prompt fits prompt_token_budget.

        Long-term text goes first, whole lines from the end. Then medium-term
        entries, lowest-ranked first (entries arrive ranked). Short-term context,
        the system prompt and the user message are never cut, so the result can
        still exceed the budget; that is logged, not raised.
        """
        budget = self.config.prompt_token_budget
        lines = long_term_text.splitlines(keepends=True) if long_term_text else []
        entries = list(medium_term_entries or [])
        result = BudgetedContext()

        def over() -> bool:
            return self._estimate(
                system_prompt, "".join(lines), entries, short_term_context, user_message
            ) > budget

        while lines and over():
            lines.pop()
            result.trimmed_long_term_lines += 1

        while entries and over():
            entries.pop()
            result.trimmed_medium_term_entries += 1

        result.long_term_text = "".join(lines)
        result.medium_term_entries = entries

        if result.trimmed:
            logger.info(
                "Prompt over budget (%d tokens): dropped %d long-term lines, %d medium-term entries",
                budget, result.trimmed_long_term_lines, result.trimmed_medium_term_entries,
            )
        if over():
            logger.warning("Prompt still exceeds %d tokens after trimming", budget)
        return result

    def build_messages(
        self,
        persona: Persona,
        project: Project,
        short_term_context: Optional[ShortTermContext],
        medium_term_entries: list[ProjectMemory],
        long_term_text: str,
        user_message: str,
    ) -> list[dict]:
        system_prompt = self.build_system_prompt(persona, project)
        fitted = self.fit_to_budget(
            system_prompt, short_term_context, medium_term_entries, long_term_text, user_message
        )

        block = self._context_block(
            fitted.long_term_text, fitted.medium_term_entries, short_term_context
        )
        return self._layout(system_prompt, block, user_message)
