"""
AI review service.

Sends the formatted pull request blob to the model and turns its JSON answer
into an ``AIReview``. Also produces embeddings for context retrieval.
"""

import asyncio
import json
import re
from typing import Any

import openai
from openai import AsyncOpenAI

from app.config import Settings
from app.errors import AIServiceError, configuration_error
from app.infrastructure.observability.logging import get_logger
from app.models.domain.review_domain import AIReview, CodeSuggestion

logger = get_logger(__name__)

MAX_RETRIES = 3
EMBEDDING_INPUT_LIMIT = 24000  # characters

SYSTEM_MESSAGE = """### Role
You are a senior code reviewer for a bounty platform. You receive a pull request summary
(metadata, linked issues, changed files and diffs) and decide how ready it is to merge.

### Output Requirements
- Return ONLY valid JSON (no backticks, no prose)
- Structure:
{
  "mergeScore": number (0-100),
  "rulesViolated": ["short rule description", ...],
  "rulesPassed": ["short rule description", ...],
  "suggestions": [
    {
      "file": "path or null",
      "lineNumber": number or null,
      "type": "fix|improvement|optimization|style",
      "severity": "low|medium|high",
      "description": "what to change",
      "reasoning": "why",
      "suggestedCode": "code or null",
      "language": "language id or null"
    }
  ],
  "summary": "2-4 sentence overview",
  "confidence": number (0-1)
}

### Scoring
- Judge whether the changes resolve the linked issue(s)
- Penalize bugs, security problems, missing tests and unrelated changes
- 85+ ready to merge, 70-84 minor work, 50-69 changes needed, below 50 major issues
"""

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def parse_review_json(raw: str) -> dict[str, Any]:
    """
    Decode the model output into a dict.

    Accepts bare JSON, JSON inside a code fence, or JSON surrounded by prose.
    """
    text = (raw or "").strip()
    fence = _FENCE_RE.search(text)
    if fence:
        text = fence.group(1).strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise AIServiceError("AI provider returned invalid JSON", recoverable=True) from None
        try:
            data = json.loads(text[start : end + 1])
        except json.JSONDecodeError as e:
            raise AIServiceError("AI provider returned invalid JSON", recoverable=True) from e

    if not isinstance(data, dict):
        raise AIServiceError("AI provider returned a non-object response", recoverable=True)
    return data


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


def normalize_review(data: dict[str, Any]) -> AIReview:
    """Clamp the score, coerce arrays and drop malformed suggestions."""
    try:
        score = int(round(float(data.get("mergeScore", 0))))
    except (TypeError, ValueError):
        logger.warning("Invalid merge score from AI provider", merge_score=data.get("mergeScore"))
        score = 0
    score = max(0, min(100, score))

    suggestions = []
    for item in data.get("suggestions") or []:
        if not isinstance(item, dict) or not item.get("description"):
            continue
        try:
            suggestions.append(
                CodeSuggestion(
                    file=item.get("file"),
                    line_number=item.get("lineNumber"),
                    type=item.get("type") or "improvement",
                    severity=item.get("severity") or "medium",
                    description=item["description"],
                    reasoning=item.get("reasoning") or "",
                    suggested_code=item.get("suggestedCode"),
                    language=item.get("language"),
                )
            )
        except ValueError as e:
            logger.warning("Dropping malformed suggestion", error=str(e))

    try:
        confidence = float(data.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5

    return AIReview(
        merge_score=score,
        rules_violated=_as_str_list(data.get("rulesViolated")),
        rules_passed=_as_str_list(data.get("rulesPassed")),
        suggestions=suggestions,
        summary=str(data.get("summary") or ""),
        confidence=max(0.0, min(1.0, confidence)),
    )


class AIReviewService:
    """Thin async wrapper over the OpenAI chat and embedding endpoints."""

    def __init__(self, settings: Settings, client: AsyncOpenAI | None = None):
        self.settings = settings
        self.client = client

    def _get_client(self) -> AsyncOpenAI:
        if self.client is None:
            if not self.settings.OPENAI_API_KEY:
                raise configuration_error("OPENAI_API_KEY")
            self.client = AsyncOpenAI(
                api_key=self.settings.OPENAI_API_KEY,
                timeout=self.settings.COLLABORATOR_TIMEOUT_SECONDS,
            )
            logger.info("OpenAI client initialized", model=self.settings.OPENAI_MODEL)
        return self.client

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()

    async def generate_review(self, prompt: str) -> AIReview:
        """
        Score a pull request.

        Args:
            prompt: The formatted pull request blob

        Raises:
            AIServiceError: provider failure or unusable output
        """
        raw = await self._complete_with_retry(prompt)
        review = normalize_review(parse_review_json(raw))
        logger.info(
            "AI review generated",
            merge_score=review.merge_score,
            suggestions=len(review.suggestions),
            rules_violated=len(review.rules_violated),
        )
        return review

    async def generate_embedding(self, text: str) -> list[float]:
        client = self._get_client()
        try:
            response = await client.embeddings.create(
                model=self.settings.OPENAI_EMBEDDING_MODEL,
                input=text[:EMBEDDING_INPUT_LIMIT],
            )
        except openai.OpenAIError as e:
            raise AIServiceError(f"Embedding request failed: {e}") from e

        if not response.data:
            raise AIServiceError("Empty embedding response")
        return list(response.data[0].embedding)

    async def check_connectivity(self) -> None:
        """Cheap authenticated call; raises AIServiceError on failure."""
        client = self._get_client()
        try:
            await client.models.retrieve(self.settings.OPENAI_MODEL)
        except openai.OpenAIError as e:
            raise AIServiceError(f"AI provider unreachable: {e}") from e

    async def _complete_with_retry(self, prompt: str) -> str:
        client = self._get_client()
        last_error: Exception | None = None

        for attempt in range(MAX_RETRIES):
            try:
                response = await client.chat.completions.create(
                    model=self.settings.OPENAI_MODEL,
                    messages=[
                        {"role": "system", "content": SYSTEM_MESSAGE},
                        {"role": "user", "content": prompt},
                    ],
                    max_tokens=self.settings.OPENAI_MAX_TOKENS,
                    temperature=self.settings.OPENAI_TEMPERATURE,
                    response_format={"type": "json_object"},
                )
                if not response.choices or not response.choices[0].message.content:
                    raise AIServiceError("Empty response from AI provider")

                return response.choices[0].message.content.strip()

            except openai.RateLimitError as e:
                last_error = e
                wait_time = min(2**attempt, 30)
                logger.warning("AI provider rate limit hit, retrying", attempt=attempt + 1, wait_time=wait_time)
                if attempt < MAX_RETRIES - 1:
                    await asyncio.sleep(wait_time)

            except openai.APITimeoutError as e:
                last_error = e
                logger.warning("AI provider timeout, retrying", attempt=attempt + 1)

            except openai.APIStatusError as e:
                last_error = e
                if 400 <= e.status_code < 500:
                    logger.error("AI provider client error (not retrying)", status_code=e.status_code)
                    raise AIServiceError(f"AI provider rejected request: {e}", recoverable=False) from e
                logger.warning("AI provider error, retrying", attempt=attempt + 1, error=str(e))

            except openai.OpenAIError as e:
                last_error = e
                logger.warning("AI provider call failed, retrying", attempt=attempt + 1, error=str(e))

        logger.error("AI provider call failed after all retries", max_retries=MAX_RETRIES, error=str(last_error))
        raise AIServiceError(f"AI provider failed after {MAX_RETRIES} attempts: {last_error}") from last_error
