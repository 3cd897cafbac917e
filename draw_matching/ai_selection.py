"""AI selection gate for ambiguous matches.

The model chooses among a closed set of at most five deterministic
candidates, or declines. Its answer is validated before anyone sees it:

- the selected line must be one of the candidates it was shown
- a missing selection is always flagged for review
- any failure (call error, timeout, empty or unparseable response) becomes a
  flagged, zero-confidence response instead of an exception

Usage:
    gate = AISelectionGate(OpenAISelectionModel(api_key=...), timeout_seconds=20)
    response = await gate.select(extracted, candidates)
    chosen = get_best_candidate(candidates, response)
"""

import asyncio
import json
import re
from typing import List, Optional, Protocol, Sequence

import openai
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.observability.logging import get_logger
from draw_matching.models import (
    AISelectionResponse,
    ExtractedInvoiceData,
    MatchCandidate,
    SelectionFactor,
    SelectionFactors,
)


logger = get_logger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_MAX_CANDIDATES = 5

SYSTEM_PROMPT = (
    "You are a construction finance analyst matching invoices to draw request "
    "budget lines. Choose only from the candidates provided. If none of them "
    "fits, or the evidence is too thin to decide, return null and flag the "
    "invoice for review. Respond with JSON only."
)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


# =============================================================================
# Model Boundary
# =============================================================================

class SelectionModel(Protocol):
    """Anything that turns a system + user prompt into response text."""

    async def complete(self, system_prompt: str, user_prompt: str) -> Optional[str]:
        ...


class OpenAISelectionModel:
    """SelectionModel backed by the OpenAI chat completions API.

    JSON-object response format, low temperature, small token budget. Rate
    limits are retried briefly; the gate's own timeout bounds the total.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        temperature: float = 0.1,
        max_tokens: int = 500,
        max_attempts: int = 2,
        client: Optional[openai.AsyncOpenAI] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_attempts = max_attempts
        self._client = client

    @property
    def client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            self._client = openai.AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def complete(self, system_prompt: str, user_prompt: str) -> Optional[str]:
        for attempt in range(self.max_attempts):
            try:
                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                    response_format={"type": "json_object"},
                )
                return response.choices[0].message.content
            except openai.RateLimitError:
                if attempt + 1 >= self.max_attempts:
                    raise
                logger.warning(f"Rate limited, retrying (attempt {attempt + 1}/{self.max_attempts})")
                await asyncio.sleep(2 * (attempt + 1))
        return None


# =============================================================================
# Prompt
# =============================================================================

def _money(value) -> str:
    return f"${value:,.2f}"


def build_selection_prompt(invoice: ExtractedInvoiceData, candidates: Sequence[MatchCandidate]) -> str:
    """Build the user prompt listing the invoice and its candidates."""
    lines = [
        "INVOICE:",
        f"- Vendor: {invoice.vendor_name or 'Unknown'}",
        f"- Amount: {_money(invoice.amount)}",
        f"- Trade: {invoice.trade or 'Unknown'}",
        f"- Work type: {invoice.work_type or 'Unknown'}",
        f"- Context: {invoice.context or 'None'}",
        f"- Keywords: {', '.join(invoice.keywords) if invoice.keywords else 'None'}",
        "",
        "CANDIDATE BUDGET LINES:",
    ]

    for i, c in enumerate(candidates, start=1):
        delta = c.factors.amount_variance_absolute
        sign = "+" if delta >= 0 else "-"
        lines.append(
            f"{i}. id={c.draw_line_id} | {c.budget_category}"
            f"{f' ({c.nahb_category})' if c.nahb_category else ''}"
            f" | requested {_money(c.amount_requested)}"
            f" | variance {sign}{_money(abs(delta))} ({c.factors.amount_variance:.1%})"
            f" | scores amount={c.scores.amount:.2f} trade={c.scores.trade:.2f}"
            f" keywords={c.scores.keywords:.2f} training={c.scores.training:.2f}"
            f" composite={c.scores.composite:.2f}"
        )
        if c.factors.training_reason:
            lines.append(f"   history: {c.factors.training_reason}")

    lines.extend([
        "",
        "Return JSON with exactly these keys:",
        '{"selected_draw_line_id": "<candidate id or null>", "confidence": <0-1>, '
        '"reasoning": "<one or two sentences>", "flag_for_review": <true|false>, '
        '"factors": {"primary": "<main reason>", "supporting": ["<other reasons>"]}}',
    ])
    return "\n".join(lines)


# =============================================================================
# Response Parsing
# =============================================================================

class _RawSelection(BaseModel):
    selected_draw_line_id: Optional[str] = None
    confidence: float = 0.0
    reasoning: str = ""
    flag_for_review: bool = False
    factors: SelectionFactors = Field(default_factory=SelectionFactors)

    @field_validator("selected_draw_line_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if value is None:
            return None
        value = str(value).strip()
        return None if value.lower() in ("", "null", "none") else value

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value):
        try:
            return max(0.0, min(1.0, float(value)))
        except (TypeError, ValueError):
            return 0.0

    @field_validator("reasoning", mode="before")
    @classmethod
    def _text(cls, value):
        return "" if value is None else str(value)

    @field_validator("factors", mode="before")
    @classmethod
    def _factors(cls, value):
        return value if isinstance(value, dict) else {}


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` fence if present."""
    return _CODE_FENCE.sub("", text.strip()).strip()


def parse_json_str(raw_text: str) -> dict:
    """Parse a JSON object from model output, tolerating fences and chatter."""
    text = strip_code_fences(raw_text)
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start < 0 or end <= start:
            raise
        data = json.loads(text[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError("Model response is not a JSON object")
    return data


def _failure(primary: SelectionFactor, reasoning: str, supporting: Optional[List[str]] = None) -> AISelectionResponse:
    return AISelectionResponse(
        selected_draw_line_id=None,
        confidence=0.0,
        reasoning=reasoning,
        flag_for_review=True,
        factors=SelectionFactors(primary=primary.value, supporting=supporting or []),
    )


def parse_selection_response(raw_text: Optional[str], candidates: Sequence[MatchCandidate]) -> AISelectionResponse:
    """Validate model output against the candidate set it was shown."""
    if raw_text is None or not raw_text.strip():
        return _failure(SelectionFactor.AI_ERROR, "Model returned an empty response", ["empty_response"])

    try:
        raw = _RawSelection.model_validate(parse_json_str(raw_text))
    except (ValueError, ValidationError) as e:
        logger.warning("Could not parse AI selection", extra_fields={"error": str(e)[:200]})
        return _failure(SelectionFactor.PARSE_ERROR, "Model response was not valid selection JSON")

    valid_ids = {c.draw_line_id for c in candidates}
    if raw.selected_draw_line_id is not None and raw.selected_draw_line_id not in valid_ids:
        logger.warning(
            "AI selected a line outside the candidate set",
            extra_fields={"selected": raw.selected_draw_line_id},
        )
        return _failure(
            SelectionFactor.INVALID_SELECTION,
            f"Model selected {raw.selected_draw_line_id}, which was not a candidate",
            ["draw_line_not_in_candidates"],
        )

    factors = raw.factors
    flag = raw.flag_for_review
    confidence = raw.confidence
    if raw.selected_draw_line_id is None:
        flag = True
        confidence = 0.0
        if not factors.primary:
            factors = SelectionFactors(primary="no_selection", supporting=factors.supporting)

    return AISelectionResponse(
        selected_draw_line_id=raw.selected_draw_line_id,
        confidence=confidence,
        reasoning=raw.reasoning,
        flag_for_review=flag,
        factors=factors,
    )


# =============================================================================
# Gate
# =============================================================================

class AISelectionGate:
    """Runs the model over a bounded candidate list. Never raises."""

    def __init__(
        self,
        model: SelectionModel,
        timeout_seconds: float = 20.0,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
    ):
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_candidates = max_candidates

    async def select(
        self,
        invoice: ExtractedInvoiceData,
        candidates: Sequence[MatchCandidate],
    ) -> AISelectionResponse:
        if not candidates:
            return _failure(SelectionFactor.NO_CANDIDATES, "No candidates to choose from")

        shown = list(candidates[: self.max_candidates])
        prompt = build_selection_prompt(invoice, shown)

        try:
            raw_text = await asyncio.wait_for(
                self.model.complete(SYSTEM_PROMPT, prompt),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("AI selection timed out", extra_fields={"timeout_seconds": self.timeout_seconds})
            return _failure(SelectionFactor.AI_ERROR, "Model call timed out", ["timeout"])
        except Exception as e:
            logger.warning("AI selection call failed", extra_fields={"error": str(e)[:200]})
            return _failure(SelectionFactor.AI_ERROR, f"Model call failed: {type(e).__name__}")

        response = parse_selection_response(raw_text, shown)
        logger.info(
            "AI selection complete",
            extra_fields={
                "selected": response.selected_draw_line_id,
                "confidence": response.confidence,
                "flag_for_review": response.flag_for_review,
                "primary_factor": response.factors.primary,
            },
        )
        return response


# =============================================================================
# Helpers
# =============================================================================

def should_use_ai_selection(candidates: Sequence[MatchCandidate], auto_match_score: float = 0.85, clear_winner_gap: float = 0.15) -> bool:
    """True when the top candidates are too close (or too weak) to auto-match."""
    if len(candidates) < 2:
        return bool(candidates) and candidates[0].scores.composite < auto_match_score
    top, second = candidates[0].scores.composite, candidates[1].scores.composite
    return top < auto_match_score or round(top - second, 6) < clear_winner_gap


def get_best_candidate(
    candidates: Sequence[MatchCandidate],
    response: Optional[AISelectionResponse] = None,
) -> Optional[MatchCandidate]:
    """The AI's validated pick, else the top deterministic candidate."""
    if not candidates:
        return None
    if response is not None and response.selected_draw_line_id and not response.flag_for_review:
        for candidate in candidates:
            if candidate.draw_line_id == response.selected_draw_line_id:
                return candidate
    return candidates[0]
