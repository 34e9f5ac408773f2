"""LLM event classifier.

Asks an OpenAI chat model, in JSON mode, what kind of event a calendar entry
is and what it needs.
"""
import json
import os
import typing as t

from openai import AsyncOpenAI

from pipeline.errors import ClassificationError
from pipeline.models import EVENT_TYPES, Event, EventAnalysis
from prompts import render_prompt

SYSTEM_PROMPT = render_prompt(
    "event_classifier_system_prompt",
    event_types=", ".join(f'"{event_type}"' for event_type in EVENT_TYPES),
)


def build_event_message(event: Event) -> dict[str, t.Any]:
    """The user message describing one event."""
    return {
        "title": event.title or "Untitled",
        "date": event.scheduled_at.isoformat(),
        "location": event.location or "Not specified",
        "participants": event.participants or [],
        "description": event.description or "No description",
    }


def parse_analysis(content: t.Optional[str]) -> EventAnalysis:
    """Parse the model's JSON reply into an EventAnalysis.

    Unknown event types collapse to "other"; non-list fields become empty lists.

    Raises:
        ClassificationError: If the reply is empty or not a JSON object
    """
    if not content:
        raise ClassificationError("Empty response from LLM")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ClassificationError(f"Invalid JSON response from LLM: {e}") from e
    if not isinstance(data, dict):
        raise ClassificationError("LLM response is not a JSON object")

    event_type = str(data.get("eventType") or "other").strip().lower()
    if event_type not in EVENT_TYPES:
        event_type = "other"

    def _strings(key: str) -> list[str]:
        value = data.get(key)
        return [str(item) for item in value] if isinstance(value, list) else []

    return EventAnalysis(
        event_type=event_type,
        context=str(data.get("context") or ""),
        required_actions=_strings("requiredActions"),
        missing_info=_strings("missingInfo"),
    )


class OpenAIEventClassifier:
    """Classifies events with an OpenAI chat model."""

    def __init__(
        self,
        api_key: t.Optional[str] = None,
        model: str = "gpt-4o-mini",
        client: t.Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        # Created on first use so a missing key only fails the classification.
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key or os.getenv("OPENAI_API_KEY"))
        return self._client

    async def classify(self, event: Event) -> EventAnalysis:
        """Classify one event.

        Raises:
            ClassificationError: If the API call fails or the reply is unusable
        """
        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                response_format={"type": "json_object"},
                temperature=0.2,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": json.dumps(build_event_message(event), indent=2)},
                ],
            )
        except Exception as e:
            raise ClassificationError(f"Error calling OpenAI: {e}") from e

        return parse_analysis(completion.choices[0].message.content)
