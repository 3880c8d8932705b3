from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

RANGE_HINT = " [Default time range: {span}, apply unless the query specifies otherwise]"


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except ValueError:
        return default


@dataclass
class Settings:
    data_path: str = os.path.join("data", "sales.csv")
    state_dir: str = str(Path.home() / ".insight")
    openai_api_key: str | None = None
    model: str = "gpt-4o-mini"
    explain_model: str | None = None
    default_date_range: str = "12m"  # '12m' | '24m' | 'all' | 'custom'
    custom_from: str = ""
    custom_to: str = ""
    reply_context_chars: int = 600
    share_base_url: str = "http://localhost:5173/"
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Settings":
        model = os.environ.get("OPENAI_MODEL", "gpt-4o-mini")
        return cls(
            data_path=os.environ.get("INSIGHT_DATA_PATH", os.path.join("data", "sales.csv")),
            state_dir=os.environ.get("INSIGHT_STATE_DIR", str(Path.home() / ".insight")),
            openai_api_key=os.environ.get("OPENAI_API_KEY"),
            model=model,
            explain_model=os.environ.get("INSIGHT_EXPLAIN_MODEL"),
            default_date_range=os.environ.get("INSIGHT_DEFAULT_RANGE", "12m"),
            custom_from=os.environ.get("INSIGHT_CUSTOM_FROM", ""),
            custom_to=os.environ.get("INSIGHT_CUSTOM_TO", ""),
            reply_context_chars=_env_int("INSIGHT_REPLY_CONTEXT_CHARS", 600),
            share_base_url=os.environ.get("INSIGHT_SHARE_BASE_URL", "http://localhost:5173/"),
            log_level=os.environ.get("INSIGHT_LOG_LEVEL", "WARNING"),
        )

    def date_range_hint(self) -> str:
        """Hint appended to every prompt so the model applies the default range."""
        if self.default_date_range == "12m":
            return RANGE_HINT.format(span="last 12 months")
        if self.default_date_range == "24m":
            return RANGE_HINT.format(span="last 24 months")
        if self.default_date_range == "custom" and self.custom_from and self.custom_to:
            return RANGE_HINT.format(span=f"{self.custom_from} to {self.custom_to}")
        return ""
