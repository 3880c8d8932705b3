from __future__ import annotations

import json
import logging
import os
import re
from datetime import date
from typing import Any, Dict, Mapping, Optional

import openai
from openai import AsyncOpenAI

from insight.planner.intent import QUERY_TYPES, Intent
from insight.utils.errors import ParseError, UpstreamError, ValidationError
from insight.utils.schema_cache import DatasetMeta

logger = logging.getLogger(__name__)

JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

SYSTEM_PROMPT = (
    "You are a real estate data query interpreter for Abu Dhabi property transactions. "
    "Given a user's question and lists of available values, return ONLY a valid JSON object with the structured query intent.\n"
    "Rules:\n"
    "- Match project names, districts, and layouts EXACTLY from the provided lists (fuzzy match: \"Noya\" -> \"Noya - Phase 1\")\n"
    "- For relative dates (\"last year\", \"since 2022\", \"last 3 years\") resolve to absolute YYYY-MM strings\n"
    "- \"last year\" means the 12 months before today; \"since 2022\" means dateFrom = \"2022-01\"\n"
    "- chartType must be \"line\" for trends, \"bar\" for counts/distributions, \"multiline\" for comparisons\n"
    "- queryType options: " + ", ".join(QUERY_TYPES) + "\n"
    "- If comparing specific named projects -> compare_projects; districts -> compare_districts; bedroom types/layouts -> compare_layouts\n"
    "- title must be under 60 characters\n"
    "- When a previous conversation is given and the question can be answered from it without new data "
    "(e.g. \"what does that mean?\"), set needsChart to false"
)

INTENT_TEMPLATE = """Question: "{prompt}"

Available data values:
- Projects (sample of first 60): {projects}
- Districts: {districts}
- Layouts: {layouts}
- Property types: {property_types}
- Data covers: {min_date} to {max_date}{price_range}
- Today's date: {today}
{context}
Return ONLY this JSON structure (no markdown, no explanation):
{{
  "queryType": "<{query_types}>",
  "filters": {{
    "projects": [],
    "districts": [],
    "layouts": [],
    "saleTypes": [],
    "propertyTypes": [],
    "dateFrom": "<YYYY-MM or null>",
    "dateTo": "<YYYY-MM or null>"
  }},
  "chartType": "<line|bar|multiline>",
  "title": "<max 60 chars>",
  "needsChart": true
}}"""


def _validate_meta(meta: Any) -> Dict[str, Any]:
    if isinstance(meta, DatasetMeta):
        meta = meta.to_dict()
    if not isinstance(meta, Mapping):
        raise ValidationError("Missing prompt or meta")
    for key in ("projects", "districts", "layouts"):
        if not isinstance(meta.get(key), list):
            raise ValidationError("meta must include projects, districts, layouts, minDate, maxDate")
    if not meta.get("minDate") or not meta.get("maxDate"):
        raise ValidationError("meta must include projects, districts, layouts, minDate, maxDate")
    return dict(meta)


def _format_price_range(meta: Mapping[str, Any]) -> str:
    lo, hi = meta.get("minPrice"), meta.get("maxPrice")
    if lo is None or hi is None:
        return ""
    return f", sale prices AED {lo:,.0f} to {hi:,.0f}"


def _format_context(context: Optional[Mapping[str, Any]]) -> str:
    if not context:
        return ""
    return (
        "\nPrevious conversation:\n"
        f"- Earlier question: {context.get('parentPrompt') or ''}\n"
        f"- Chart shown: {context.get('parentTitle') or ''}\n"
        f"- Analysis given: {context.get('parentAnalysis') or ''}\n"
    )


def parse_intent_text(text: str) -> Intent:
    m = JSON_OBJECT_RE.search(text or "")
    if not m:
        raise ParseError("Could not parse intent from model response")
    try:
        data = json.loads(m.group(0))
    except json.JSONDecodeError as e:
        raise ParseError("Model response was not valid JSON") from e
    try:
        return Intent.from_dict(data)
    except ValidationError as e:
        raise ParseError(f"Model returned a malformed intent: {e.message}") from e


class IntentService:
    """Turns a free-form question into a structured Intent via the chat completions API."""

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

    async def fetch_intent(self, prompt: str, meta: Any, context: Optional[Mapping[str, Any]] = None) -> Intent:
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValidationError("Missing prompt or meta")
        meta = _validate_meta(meta)

        user = INTENT_TEMPLATE.format(
            prompt=prompt,
            projects=", ".join(meta["projects"][:60]),
            districts=", ".join(meta["districts"]),
            layouts=", ".join(meta["layouts"]),
            min_date=meta["minDate"],
            max_date=meta["maxDate"],
            property_types=", ".join(meta.get("propertyTypes") or []) or "any",
            price_range=_format_price_range(meta),
            query_types="|".join(QUERY_TYPES),
            today=date.today().isoformat(),
            context=_format_context(context),
        )
        client = self._get_client()
        try:
            resp = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": user},
                ],
                temperature=0.1,
                max_tokens=512,
            )
        except openai.OpenAIError as e:
            raise UpstreamError(str(e) or "Intent service error") from e
        content = resp.choices[0].message.content if resp.choices else None
        intent = parse_intent_text(content or "")
        logger.debug("intent %s for %r", intent.query_type, prompt[:80])
        return intent
