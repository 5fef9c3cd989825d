"""
Quota-gated OpenAI assistant.

Answers a prompt for a project topic and records the exchange on that
topic. The quota is checked before the model is called, so a refused
turn costs nothing.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from openai import OpenAI, OpenAIError

from ..config.loader import DEFAULT_SYSTEM_PROMPT
from ..core.quota import QuotaExhausted
from ..core.recorder import ConversationRecorder
from ..storage.repository import AppendFailure, UpstreamFetchFailure

logger = logging.getLogger(__name__)

FALLBACK_RESPONSE = """# I'm having trouble connecting to my AI service

I apologize, but I'm currently experiencing technical difficulties connecting to my AI service. This might be due to:

- Network connectivity issues
- API rate limiting
- Knowledge base configuration errors

## What you can try

- Please try again in a few moments
- You can continue exploring other parts of the platform while this is being resolved

Thank you for your understanding!
"""


@dataclass(frozen=True)
class AssistantReply:
    """Answer returned to the caller.

    ``recorded`` is False when the exchange could not be appended to the
    topic; ``fallback`` is True when the model could not be reached.
    """
    text: str
    recorded: bool
    fallback: bool = False


class QuotaGuardedAssistant:
    """OpenAI chat client that records every answered prompt on a topic."""

    def __init__(
        self,
        recorder: ConversationRecorder,
        model: str,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        client: Optional[Any] = None,
    ):
        """Initialize the assistant.

        Args:
            recorder: Recorder used for the quota check and the append
            model: OpenAI model name (required)
            system_prompt: System message sent with every prompt
            client: OpenAI client (defaults to a new OpenAI())

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.recorder = recorder
        self.model = model
        self.system_prompt = system_prompt
        self.client = client or OpenAI()

    def ask(self, prompt: str, topic_id: str) -> AssistantReply:
        """Answer a prompt and record the turn on the topic.

        Args:
            prompt: User question (required)
            topic_id: Project topic to check and record against

        Returns:
            AssistantReply with the answer text

        Raises:
            ValueError: If prompt is empty
            QuotaExhausted: If the topic has no messages left
            MissingCreationRecord: If the topic has no creation record
            UpstreamFetchFailure: If the topic cannot be read for the check
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")

        # Refusals surface before the model is called
        self.recorder.check_quota(topic_id)

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": prompt},
                ],
            )
            answer = response.choices[0].message.content
            if not answer:
                raise ValueError("OpenAI response missing message content")
        except (OpenAIError, ValueError, IndexError) as e:
            logger.warning("Assistant unavailable for topic %s: %s", topic_id, e)
            return self._fallback(prompt, topic_id)

        try:
            self.recorder.record_turn(topic_id, prompt, answer)
        except (AppendFailure, UpstreamFetchFailure, QuotaExhausted) as e:
            logger.error("Failed to record conversation to topic %s: %s", topic_id, e)
            return AssistantReply(text=answer, recorded=False)
        return AssistantReply(text=answer, recorded=True)

    def _fallback(self, prompt: str, topic_id: str) -> AssistantReply:
        """Return the canned reply without charging the topic's quota.

        Only a topic with no records yet gets the fallback written to it;
        on any other topic it would count as a chat turn.
        """
        try:
            if self.recorder.topics.get_records(topic_id):
                logger.info("Fallback response for topic %s not recorded", topic_id)
                recorded = False
            else:
                self.recorder.record_turn(topic_id, prompt, FALLBACK_RESPONSE, usage_quota=0)
                recorded = True
        except Exception as e:
            logger.error("Error recording fallback response to topic %s: %s", topic_id, e)
            recorded = False
        return AssistantReply(text=FALLBACK_RESPONSE, recorded=recorded, fallback=True)
