from __future__ import annotations

import json
import logging
import os
from typing import Any, AsyncIterator, Dict, Mapping, Optional

import openai
from openai import AsyncOpenAI

from insight.planner.intent import TREND_RATE, Intent
from insight.utils.errors import UpstreamError, ValidationError

logger = logging.getLogger(__name__)

SHORT = "short"
FULL = "full"

GROUNDING_CLAUSE = (
    "\n\nCRITICAL: Only cite numbers that appear verbatim in the KEY DATA section below. "
    "Do not draw on your training knowledge of Abu Dhabi real estate prices, volumes, or market trends. "
    "Every AED figure, percentage, and transaction count you write must come directly from the provided data. "
    "If a number is not in the data, do not mention it."
)

SHORT_PROMPT = (
    "You are a real estate market analyst specializing in Abu Dhabi property.\n"
    "Write exactly 1 sentence with the single most important insight and the key number.\n"
    "No headers, no bullets, flowing prose only." + GROUNDING_CLAUSE
)

FULL_PROMPT = (
    "You are a real estate market analyst specializing in Abu Dhabi property.\n"
    "Write clear, accessible analysis for sophisticated investors.\n"
    "Rules:\n"
    "- Write exactly 2-3 paragraphs of flowing prose, NO headers, NO bullet points, NO markdown\n"
    "- Lead with the single most important insight\n"
    "- Use specific numbers and percentages from the data\n"
    "- Compare and contrast when multiple series exist\n"
    "- End with a brief forward-looking observation if the data supports one\n"
    "- Keep language accessible to non-experts while remaining precise" + GROUNDING_CLAUSE
)

CLARIFY_PROMPT = (
    "You are a friendly real estate data assistant for the Abu Dhabi property market.\n"
    "The user asked a question this system cannot directly answer. This system can show: price trends, "
    "price-per-sqm trends, transaction volumes, project comparisons, district comparisons, and layout breakdowns.\n\n"
    "Based on the user's question, return a JSON object with exactly two keys:\n"
    "- \"question\": A short, warm clarifying question that steers toward what data would help (max 10 words, no trailing period, no markdown)\n"
    "- \"options\": An array of 2-3 short strings (max 5 words each) that are real data queries the system can run\n\n"
    "Rules:\n"
    "- Never mention SQL, databases, or technical errors\n"
    "- Options must be data requests, not meta-responses about rephrasing\n"
    "- Return ONLY valid JSON, no markdown fences, no explanation text"
)

CLARIFY_FALLBACK = {
    "question": "What data interests you?",
    "options": ["Price trends", "Transaction volumes", "District comparison"],
}

MAX_TOKENS = {SHORT: 80, FULL: 600}


def _num(value: Any) -> str:
    try:
        return f"{float(value):,.0f}"
    except (TypeError, ValueError):
        return str(value)


def _signed(pct: Any) -> str:
    return f"{'+' if pct and pct > 0 else ''}{pct}%"


def format_summary_stats(stats: Optional[Mapping[str, Any]], query_type: str) -> str:
    """Render summary statistics as a labelled plain-text block the model can quote from."""
    if not stats:
        return "No data available."

    lines = ["KEY DATA (cite only these numbers, do not use any other figures):"]
    date_range = stats.get("date_range") or {}
    if date_range.get("from") or date_range.get("to"):
        lines.append(f"• Date range: {date_range.get('from') or 'start'} to {date_range.get('to') or 'present'}")

    if "total_transactions" in stats:
        lines.append(f"• Total transactions in period: {_num(stats['total_transactions'])}")
        if stats.get("avg_monthly"):
            lines.append(f"• Monthly average: {_num(stats['avg_monthly'])}")
        if stats.get("peak_month") and stats.get("peak_count") is not None:
            lines.append(f"• Peak month: {stats['peak_month']} with {_num(stats['peak_count'])} transactions")
        return "\n".join(lines)

    series = stats.get("series") or []
    if len(series) > 1:
        for s in series:
            lines.append(f"\nSeries: {s['name']}")
            lines.append(f"  • Starting value: AED {_num(s['first'])}")
            lines.append(f"  • Latest value:   AED {_num(s['last'])}")
            lines.append(f"  • Change:         {_signed(s['pct_change'])} over the period")
            if s.get("peak"):
                lines.append(f"  • Peak:           AED {_num(s['peak'])} ({s.get('peak_month')})")
            if s.get("tx_count"):
                lines.append(f"  • Transactions in period: {_num(s['tx_count'])}")
    elif len(series) == 1:
        s = series[0]
        unit = "AED/sqm" if query_type == TREND_RATE else "AED"
        lines.append(f"• Starting value: {unit} {_num(s['first'])}")
        lines.append(f"• Latest value:   {unit} {_num(s['last'])}")
        lines.append(f"• Change:         {_signed(s['pct_change'])} over the period")
        if s.get("peak"):
            lines.append(f"• Peak:           {unit} {_num(s['peak'])} ({s.get('peak_month')})")
        if s.get("tx_count"):
            lines.append(f"• Total transactions in period: {_num(s['tx_count'])}")
    else:
        lines.append("• No series data available.")
    return "\n".join(lines)


def parse_clarification(text: Optional[str]) -> Dict[str, Any]:
    if not text:
        logger.warning("clarify: empty content from model")
        return dict(CLARIFY_FALLBACK)
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    try:
        data = json.loads(cleaned.strip())
    except json.JSONDecodeError:
        logger.warning("clarify: could not parse %r", text[:200])
        return dict(CLARIFY_FALLBACK)
    question = data.get("question") if isinstance(data, dict) else None
    options = data.get("options") if isinstance(data, dict) else None
    if (
        not isinstance(question, str)
        or not isinstance(options, list)
        or not 2 <= len(options) <= 3
        or not all(isinstance(o, str) for o in options)
    ):
        logger.warning("clarify: unexpected shape %r", data)
        return dict(CLARIFY_FALLBACK)
    return {"question": question, "options": options}


class ExplanationService:
    """Analyst commentary over summary statistics, streamed as plain text."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, client: Optional[AsyncOpenAI] = None):
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        self.model = model or os.environ.get("OPENAI_MODEL", "gpt-4o-mini")
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.api_key:
                raise UpstreamError("OPENAI_API_KEY is not set", status=503)
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def stream(
        self,
        prompt: str,
        intent: Optional[Intent],
        summary_stats: Optional[Mapping[str, Any]],
        mode: str = SHORT,
    ) -> AsyncIterator[str]:
        if not prompt:
            raise ValidationError("Missing required field: prompt")
        if mode not in MAX_TOKENS:
            raise ValidationError(f"Unsupported explanation mode: {mode}")
        if intent is None or summary_stats is None:
            raise ValidationError("Missing required fields: intent, summaryStats")

        user = (
            f'Original question: "{prompt}"\n\n'
            f"Query type: {intent.query_type}\n"
            f"Filters applied: {json.dumps(intent.filters.to_dict())}\n\n"
            f"{format_summary_stats(summary_stats, intent.query_type)}\n\n"
            "Write the analyst commentary now."
        )
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SHORT_PROMPT if mode == SHORT else FULL_PROMPT},
                    {"role": "user", "content": user},
                ],
                temperature=0.2,
                max_tokens=MAX_TOKENS[mode],
                stream=True,
            )
            async for chunk in response:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except openai.OpenAIError as e:
            raise UpstreamError(str(e) or "Explanation service error") from e

    async def clarify(self, prompt: str) -> Dict[str, Any]:
        """Suggest a clarifying question with 2-3 runnable follow-ups; never fails."""
        if not prompt:
            raise ValidationError("Missing required field: prompt")
        try:
            client = self._get_client()
            resp = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": CLARIFY_PROMPT},
                    {"role": "user", "content": f'The user asked: "{prompt}"'},
                ],
                temperature=0.3,
                max_tokens=200,
            )
        except (openai.OpenAIError, UpstreamError) as e:
            logger.warning("clarify: upstream error: %s", e)
            return dict(CLARIFY_FALLBACK)
        content = resp.choices[0].message.content if resp.choices else None
        return parse_clarification(content)
