"""
Guardrail classification pipeline.

Every assistant message is moderated once it is final. The verdict is
attached to the message as a GuardrailResult: IN_PROGRESS while the
classifier runs, then PASS for category NONE and FAIL for anything else.
Classifier errors and timeouts also yield FAIL; an unvetted message is
never reported as safe. Classification runs in the background so the
event stream keeps flowing.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Protocol

from logging_setup import Component, get_logger
from observability.events import Component as ObsComponent, EventEmitter, Severity, text_pii

from .errors import ClassificationError
from .llm_client import ChatCompletionClient, LLMRequestError
from .transcript import GuardrailCategory, GuardrailResult, ItemKind, TranscriptItem

if TYPE_CHECKING:
    from .session import RealtimeSession


logger = get_logger(Component.GUARDRAIL)
emitter = EventEmitter(ObsComponent.GUARDRAIL)


@dataclass
class Classification:
    """Classifier output. category None means the message could not be classified."""

    category: Optional[GuardrailCategory]
    rationale: Optional[str] = None


class Classifier(Protocol):
    async def classify(self, text: str, context: List[Dict[str, str]]) -> Classification:
        ...


def parse_category(value: object) -> GuardrailCategory:
    if not isinstance(value, str):
        raise ClassificationError(f"category must be a string, got {type(value).__name__}")
    try:
        return GuardrailCategory(value.strip().upper())
    except ValueError:
        raise ClassificationError(f"unknown moderation category {value!r}") from None


MODERATION_PROMPT = """\
You are a content moderation classifier for {company_name}. Classify the
assistant message below into exactly one category:

- OFFENSIVE: hate speech, discriminatory language, insults, slurs or harassment.
- OFF_BRAND: disparages competitors or talks about topics unrelated to {company_name}'s business.
- VIOLENCE: explicit threats, incitement of harm or graphic descriptions of physical injury or violence.
- NONE: none of the above; the message is fine.

Use the recent conversation only to understand the message; classify the
assistant message itself. Reply with a JSON object:
{{"moderationRationale": "<one sentence>", "moderationCategory": "OFFENSIVE" | "OFF_BRAND" | "VIOLENCE" | "NONE"}}
"""


class LLMGuardrailClassifier:
    """Classifier backed by a small chat model with a JSON response."""

    def __init__(self, client: ChatCompletionClient, company_name: str = "NewTelco"):
        self.client = client
        self.company_name = company_name

    async def classify(self, text: str, context: List[Dict[str, str]]) -> Classification:
        messages = [
            {"role": "system", "content": MODERATION_PROMPT.format(company_name=self.company_name)},
            {
                "role": "user",
                "content": json.dumps(
                    {"recent_conversation": context, "assistant_message": text},
                    ensure_ascii=False,
                ),
            },
        ]
        try:
            completion = await self.client.complete(messages, response_format={"type": "json_object"})
        except LLMRequestError as e:
            raise ClassificationError(str(e)) from e

        try:
            verdict = json.loads(completion.text)
        except json.JSONDecodeError as e:
            raise ClassificationError(f"classifier reply is not JSON: {e}") from e
        if not isinstance(verdict, dict):
            raise ClassificationError("classifier reply must be a JSON object")

        return Classification(
            category=parse_category(verdict.get("moderationCategory")),
            rationale=verdict.get("moderationRationale"),
        )


class GuardrailPipeline:
    """Schedules classification for finalized assistant messages."""

    def __init__(
        self,
        classifier: Classifier,
        *,
        timeout_seconds: float = 5.0,
        context_window: int = 4,
    ):
        self.classifier = classifier
        self.timeout_seconds = timeout_seconds
        self.context_window = context_window

    def submit(self, session: "RealtimeSession", item: TranscriptItem) -> GuardrailResult:
        """
        Attach an IN_PROGRESS result to a DONE assistant message and start classifying.

        Callers hold the session's state lock. A message that already has a
        result keeps it.
        """
        if item.kind != ItemKind.ASSISTANT_MESSAGE:
            raise ValueError(f"guardrails only apply to assistant messages, not {item.kind.value}")
        if not item.is_done:
            raise ValueError("guardrails only run on finalized messages")
        if item.guardrail is not None:
            return item.guardrail

        item.guardrail = GuardrailResult()
        context = session.transcript.recent_context(item.item_id, self.context_window)
        emitter.emit(
            "guardrail.started",
            session_id=session.session_id,
            correlation_id=item.item_id,
            agent=item.agent_name,
            context_messages=len(context),
        )
        session.spawn(
            self._classify_and_commit(session, item, item.text, context),
            name=f"guardrail:{item.item_id}",
        )
        return item.guardrail

    async def classify(self, text: str, context: List[Dict[str, str]]) -> Classification:
        """Run the classifier with a deadline. Never raises; failures classify as unknown."""
        try:
            return await asyncio.wait_for(
                self.classifier.classify(text, context),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return Classification(None, f"classifier timed out after {self.timeout_seconds}s")
        except ClassificationError as e:
            return Classification(None, f"classification failed: {e}")
        except Exception as e:
            logger.exception("Unexpected classifier error")
            return Classification(None, f"classification failed: {type(e).__name__}")

    async def _classify_and_commit(
        self,
        session: "RealtimeSession",
        item: TranscriptItem,
        text: str,
        context: List[Dict[str, str]],
    ) -> None:
        log = logger.with_session(session.session_id)
        started = time.perf_counter()
        classification = await self.classify(text, context)
        latency_ms = int((time.perf_counter() - started) * 1000)

        async with session.commit() as live:
            if not live:
                log.info("Guardrail result discarded after disconnect", item_id=item.item_id)
                emitter.emit(
                    "guardrail.discarded",
                    session_id=session.session_id,
                    correlation_id=item.item_id,
                    latency_ms=latency_ms,
                )
                return
            result = item.guardrail
            if result is None or not result.settle(classification.category, classification.rationale):
                return

        failed = classification.category != GuardrailCategory.NONE
        log.info(
            "Guardrail decided",
            item_id=item.item_id,
            status=result.status.value,
            category=classification.category.value if classification.category else None,
            latency_ms=latency_ms,
        )
        emitter.emit(
            "guardrail.decided",
            session_id=session.session_id,
            severity=Severity.WARN if failed else Severity.INFO,
            correlation_id=item.item_id,
            pii=text_pii("rationale"),
            status=result.status.value,
            category=classification.category.value if classification.category else None,
            rationale=classification.rationale,
            latency_ms=latency_ms,
        )
