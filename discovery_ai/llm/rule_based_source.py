"""
Offline interviewer
A CompletionSource that needs no model: it extracts profile fields from
the latest user message with ProfileExtractor, asks for the next missing
field and recommends a destination once the profile is complete. Output
has the same shape as an LLM reply (text followed by the JSON payload)
and is streamed a few words at a time.
"""

import asyncio
import json
import re
from typing import AsyncIterator, Optional

from ..algorithms.destination_matcher import match_destination
from ..algorithms.profile_accumulator import derive_stage, merge, next_question_key
from ..schemas.chat_schemas import ConversationStage
from ..utils.chat_helpers import format_brl
from .completion_source import CompletionFragment, CompletionSource
from .profile_extractor import ProfileExtractor, profile_extractor
from .prompts import FOLLOW_UP_QUESTIONS, RECOMMENDATION_MESSAGE, PromptContext


class RuleBasedCompletionSource(CompletionSource):
    """Deterministic interviewer for offline use and tests"""

    name = "rule_based"

    def __init__(
        self,
        extractor: Optional[ProfileExtractor] = None,
        words_per_fragment: int = 3,
        fragment_delay: float = 0.0,
    ):
        self.extractor = extractor or profile_extractor
        self.words_per_fragment = max(1, words_per_fragment)
        self.fragment_delay = fragment_delay

    def compose_reply(self, prompt: PromptContext) -> str:
        """Full reply text: message for the user followed by the JSON payload"""
        context = prompt.collected_data
        update = self.extractor.parse(
            prompt.latest_user_message or "",
            context=context,
            expecting=next_question_key(context),
        )
        merged = merge(context, update)
        key = next_question_key(merged)

        data = merged.model_dump()
        if key is None:
            destination = match_destination(merged)
            message = RECOMMENDATION_MESSAGE.format(
                destination=destination.label(),
                activities=", ".join(merged.activities),
                budget=format_brl(merged.budget_in_brl),
                purpose=merged.purpose,
            )
            data.update(destination_name=destination.name, destination_iata=destination.iata)
            stage = ConversationStage.RECOMMENDATION_READY
        else:
            captured = bool(update.model_dump(exclude_defaults=True))
            ack = "Anotado!" if captured else "Desculpe, não entendi muito bem."
            message = f"{ack} {FOLLOW_UP_QUESTIONS[key]}"
            stage = derive_stage(merged)

        payload = {
            "conversation_stage": stage.value,
            "data_collected": data,
            "next_question_key": key,
            "assistant_message": message,
            "is_final_recommendation": key is None,
        }
        return f"{message}\n\n{json.dumps(payload, ensure_ascii=False)}"

    async def stream(self, session_id: str, prompt: PromptContext) -> AsyncIterator[CompletionFragment]:
        words = re.findall(r"\S+\s*", self.compose_reply(prompt))
        for i in range(0, len(words), self.words_per_fragment):
            if self.fragment_delay:
                await asyncio.sleep(self.fragment_delay)
            yield CompletionFragment(text="".join(words[i:i + self.words_per_fragment]))
        yield CompletionFragment(is_complete=True)
