"""Matching configuration and runtime settings.

Two layers:
- MatchingConfig: the named, tunable weights and thresholds used by scoring,
  classification and learning. Pure data, no I/O.
- Settings: deployment settings (database path, OpenAI model, timeouts,
  webhook URL), read from the environment after loading a local .env file.

Every MatchingConfig field can be overridden with a DRAW_MATCHING_<FIELD>
environment variable, e.g. DRAW_MATCHING_AUTO_MATCH_SCORE=0.9.
"""

import os
from decimal import Decimal
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


ENV_PREFIX = "DRAW_MATCHING_"
DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "draw_matching.db"


# =============================================================================
# Matching Configuration
# =============================================================================

class MatchingConfig(BaseModel):
    """Weights and thresholds for invoice-to-draw-line matching."""

    # Composite weights (normalized at scoring time)
    amount_weight: float = Field(default=0.50, ge=0, description="Weight for amount proximity")
    trade_weight: float = Field(default=0.20, ge=0, description="Weight for trade/category match")
    keywords_weight: float = Field(default=0.15, ge=0, description="Weight for keyword overlap")
    training_weight: float = Field(default=0.15, ge=0, description="Weight for learned history")

    # Classification
    auto_match_score: float = Field(default=0.85, description="Min composite for AUTO_MATCH")
    clear_winner_gap: float = Field(default=0.15, description="Min lead over runner-up for AUTO_MATCH")
    mid_confidence_floor: float = Field(default=0.50, description="Below this, no AI and no match")
    min_candidate_score: float = Field(default=0.35, description="Min composite to be a candidate")
    max_ai_candidates: int = Field(default=5, description="Max candidates shown to the AI")

    # Amount bands
    amount_exact_tolerance: Decimal = Field(
        default=Decimal("50"),
        description="Absolute variance (currency) that still counts as exact",
    )
    amount_exact_pct: float = Field(default=0.02, description="Relative variance that counts as exact")

    # History
    keyword_sample_limit: int = Field(default=100, description="Training records scanned per category")
    vendor_strong_match_count: int = Field(default=3, description="Vendor matches that count as strong history")

    # Learning
    association_max_attempts: int = Field(default=5, description="Retries for the association CAS update")
    association_retry_delay_seconds: float = Field(
        default=0.01,
        ge=0,
        description="Base backoff between CAS retries (jittered, doubled per attempt)",
    )

    # Coverage
    coverage_variance_pct: float = Field(default=0.10, description="Allowed draw-level variance")
    exact_match_tolerance_pct: float = Field(default=0.05, description="Fast-path exact amount tolerance")

    @classmethod
    def from_env(cls) -> "MatchingConfig":
        """Build a config from DRAW_MATCHING_* environment overrides."""
        overrides = {}
        for name in cls.model_fields:
            value = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if value is not None and value != "":
                overrides[name] = value
        return cls.model_validate(overrides)


DEFAULT_MATCHING_CONFIG = MatchingConfig()


# =============================================================================
# Runtime Settings
# =============================================================================

class Settings(BaseModel):
    """Deployment settings for the matching service."""

    db_path: Path = Field(default=DEFAULT_DB_PATH)

    openai_api_key: Optional[str] = None
    ai_model: str = Field(default="gpt-4o-mini")
    ai_enabled: bool = Field(default=True)
    ai_timeout_seconds: float = Field(default=20.0)

    history_timeout_seconds: float = Field(default=5.0)

    webhook_base_url: Optional[str] = None
    webhook_timeout_seconds: float = Field(default=5.0)

    matching: MatchingConfig = Field(default_factory=MatchingConfig)


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """Load settings from the environment (and a .env file if present).

    Args:
        env_file: Explicit .env path; defaults to the repository root .env

    Returns:
        Settings instance
    """
    env_path = env_file or Path(__file__).resolve().parents[1] / ".env"
    if env_path.exists():
        load_dotenv(env_path, override=False)

    return Settings(
        db_path=Path(os.getenv(f"{ENV_PREFIX}DB_PATH", str(DEFAULT_DB_PATH))),
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        ai_model=os.getenv(f"{ENV_PREFIX}AI_MODEL", "gpt-4o-mini"),
        ai_enabled=_env_flag(f"{ENV_PREFIX}AI_ENABLED", True),
        ai_timeout_seconds=float(os.getenv(f"{ENV_PREFIX}AI_TIMEOUT_SECONDS", "20")),
        history_timeout_seconds=float(os.getenv(f"{ENV_PREFIX}HISTORY_TIMEOUT_SECONDS", "5")),
        webhook_base_url=os.getenv(f"{ENV_PREFIX}WEBHOOK_URL") or None,
        webhook_timeout_seconds=float(os.getenv(f"{ENV_PREFIX}WEBHOOK_TIMEOUT_SECONDS", "5")),
        matching=MatchingConfig.from_env(),
    )
