"""Text-completion collaborator.

The engine needs exactly two things from a language model: ``classify``
(intent of a reply) and ``extract`` (time expressions in a reply). Both take
a prompt and return a JSON object; callers validate the shape themselves.
"""

import json
import logging
import re
from typing import Any, Protocol

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from opentelemetry.trace import Status, StatusCode

from parley.core.config import settings
from parley.core.errors import CompletionServiceError
from parley.core.tracing import get_tracer, safe_span_attributes

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class CompletionClient(Protocol):
    async def classify(self, prompt: str) -> dict[str, Any]:
        ...

    async def extract(self, prompt: str) -> dict[str, Any]:
        ...


def parse_json_object(content: str) -> dict[str, Any]:
    """Parse a model reply into a dict.

    Code fences are stripped. Anything that is not a JSON object comes back
    as ``{}`` so the caller's schema validation turns it into ambiguity
    instead of an exception.
    """
    text = _FENCE_RE.sub("", content.strip())
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Completion reply was not valid JSON", extra={"reply_length": len(content)})
        return {}
    if not isinstance(parsed, dict):
        logger.warning("Completion reply was JSON but not an object", extra={"json_type": type(parsed).__name__})
        return {}
    return parsed


class OpenAICompletionClient:
    """``CompletionClient`` backed by an OpenAI chat model in JSON mode."""

    CLASSIFY_SYSTEM = (
        "You classify replies to meeting-scheduling emails. "
        "Respond with a single JSON object and nothing else."
    )
    EXTRACT_SYSTEM = (
        "You extract meeting date/time expressions from emails. "
        "Respond with a single JSON object and nothing else."
    )

    def __init__(self, model: str | None = None, api_key: str | None = None, timeout: float | None = None):
        self.model = model or settings.OPENAI_MODEL
        self._classifier = ChatOpenAI(
            model=self.model,
            temperature=0.1,
            api_key=api_key or settings.OPENAI_API_KEY,
            timeout=timeout or settings.COMPLETION_TIMEOUT_SECONDS,
            model_kwargs={"response_format": {"type": "json_object"}},
        )
        self._extractor = ChatOpenAI(
            model=self.model,
            temperature=0.0,
            api_key=api_key or settings.OPENAI_API_KEY,
            timeout=timeout or settings.COMPLETION_TIMEOUT_SECONDS,
            model_kwargs={"response_format": {"type": "json_object"}},
        )

    async def classify(self, prompt: str) -> dict[str, Any]:
        return await self._complete("classify", self._classifier, self.CLASSIFY_SYSTEM, prompt)

    async def extract(self, prompt: str) -> dict[str, Any]:
        return await self._complete("extract", self._extractor, self.EXTRACT_SYSTEM, prompt)

    async def _complete(self, operation: str, llm: ChatOpenAI, system: str, prompt: str) -> dict[str, Any]:
        with tracer.start_as_current_span(f"completion.{operation}") as span:
            span.set_attributes(safe_span_attributes(
                operation=operation,
                model=self.model,
                prompt=prompt,
            ))
            try:
                response = await llm.ainvoke([SystemMessage(content=system), HumanMessage(content=prompt)])
            except Exception as e:
                logger.error(
                    "Text-completion call failed",
                    extra={"operation": operation, "error_type": type(e).__name__},
                )
                span.set_status(Status(StatusCode.ERROR, type(e).__name__))
                raise CompletionServiceError(f"{operation} call failed: {e}") from e

            content = response.content if isinstance(response.content, str) else json.dumps(response.content)
            result = parse_json_object(content)
            span.set_attribute("result_keys", len(result))
            span.set_status(Status(StatusCode.OK))
            return result
