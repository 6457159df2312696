"""Classification gateway: asks OpenAI whether a message is advertising."""

from __future__ import annotations

import asyncio
import json
import logging

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, ValidationError, field_validator
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Settings
from .constants import (
    CLASSIFICATION_PROMPT,
    CONCURRENCY_LIMIT,
    MAX_BODY_CHARS,
    PACING_SECONDS,
    RETRY_ATTEMPTS,
    TEMPERATURE,
)
from .errors import ClassificationFailure
from .models import ClassificationResult, Message

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


class _ClassifierReply(BaseModel):
    """Exact shape the classifier must answer with."""

    model_config = ConfigDict(extra="ignore")

    isAdvertising: StrictBool
    confidence: float = Field(ge=0.0, le=1.0)
    reason: StrictStr

    @field_validator("confidence", mode="before")
    @classmethod
    def _must_be_number(cls, value):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("confidence must be a number")
        return value


def parse_reply(content: str | None) -> ClassificationResult:
    """Validate a raw classifier reply.

    Raises ClassificationFailure for an empty reply, invalid JSON or any
    field that is missing or of the wrong type.
    """
    if not content:
        raise ClassificationFailure("Empty response from classifier")
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ClassificationFailure(f"Classifier reply is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ClassificationFailure("Classifier reply is not a JSON object")
    try:
        reply = _ClassifierReply.model_validate(payload)
    except ValidationError as exc:
        raise ClassificationFailure(f"Invalid response format from classifier: {exc}") from exc
    return ClassificationResult(
        is_advertising=reply.isAdvertising,
        confidence=float(reply.confidence),
        reason=reply.reason,
    )


def format_message(message: Message) -> str:
    """The content blob sent to the classifier for one message."""
    return (
        f"Subject: {message.subject}\n"
        f"From: {message.sender}\n"
        f"Date: {message.date.isoformat()}\n"
        f"Body: {message.body[:MAX_BODY_CHARS]}\n"
    )


class ClassificationGateway:
    """Classifies messages with bounded concurrency; never raises for one bad message."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        concurrency_limit: int = CONCURRENCY_LIMIT,
        pacing_seconds: float = PACING_SECONDS,
    ):
        if concurrency_limit <= 0:
            raise ValueError("concurrency_limit must be positive")
        self.client = client
        self.model = model
        self.concurrency_limit = concurrency_limit
        self.pacing_seconds = pacing_seconds

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        wait=wait_exponential(multiplier=1, min=1, max=20),
        stop=stop_after_attempt(RETRY_ATTEMPTS),
        reraise=True,
    )
    async def _complete(self, content: str) -> str | None:
        completion = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": CLASSIFICATION_PROMPT},
                {"role": "user", "content": content},
            ],
            response_format={"type": "json_object"},
            temperature=TEMPERATURE,
        )
        if not completion.choices:
            return None
        return completion.choices[0].message.content

    async def classify(self, message: Message) -> ClassificationResult:
        """Classify one message, falling back to the fail-safe result on any failure."""
        try:
            content = await self._complete(format_message(message))
            result = parse_reply(content)
        except ClassificationFailure as exc:
            logger.warning(f"Unusable classification for {message.subject!r}: {exc}")
            return ClassificationResult.fail_safe()
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error classifying {message.subject!r}: {exc}")
            return ClassificationResult.fail_safe()
        logger.debug(
            f"Classified {message.subject!r}: advertising={result.is_advertising} "
            f"confidence={result.confidence:.2f}"
        )
        return result

    async def classify_batch(self, messages: list[Message]) -> dict[str, ClassificationResult]:
        """Classify in windows of ``concurrency_limit``, pausing between windows."""
        results: dict[str, ClassificationResult] = {}
        for start in range(0, len(messages), self.concurrency_limit):
            window = messages[start : start + self.concurrency_limit]
            outcomes = await asyncio.gather(*(self.classify(message) for message in window))
            for message, outcome in zip(window, outcomes):
                results[message.id] = outcome
            if start + self.concurrency_limit < len(messages):
                await asyncio.sleep(self.pacing_seconds)
        return results


def create_gateway(settings: Settings) -> ClassificationGateway:
    """Gateway backed by the OpenAI API key and model from the settings."""
    logger.info(f"Using OpenAI model: {settings.openai_model}")
    client = AsyncOpenAI(api_key=settings.openai_api_key)
    return ClassificationGateway(client, settings.openai_model)
