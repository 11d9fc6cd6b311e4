"""
Centralised application settings loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load .env from project root (two levels up from this file)
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(_ENV_PATH)

_DEFAULT_CATALOG = Path(__file__).resolve().parents[2] / "semantic_layer" / "entity_catalog.yml"


class Settings(BaseSettings):
    # ── ERP (JSON-RPC) ───────────────────────────────────
    erp_url: str = "http://localhost:8069"
    erp_db: str = "odoo"
    erp_username: str = "admin"
    erp_api_key: str = ""
    erp_timeout_seconds: float = 5.0

    # ── LLM ──────────────────────────────────────────────
    llm_provider: str = "mock"  # mock | openai | anthropic
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    # ── Engine ───────────────────────────────────────────
    max_batch_size: int = 5
    default_limit: int = 50
    max_limit: int = 500
    cache_ttl_seconds: float = 300.0
    cache_max_size: int = 100

    # ── Comparison / insight thresholds ──────────────────
    trend_flat_threshold: float = 0.01
    concentration_share: float = 0.40
    top_three_share: float = 0.50
    missing_contact_share: float = 0.30
    hot_lead_probability: float = 70.0
    swing_threshold: float = 0.10
    decline_threshold: float = 0.30
    max_insights: int = 5

    # ── Grounding ────────────────────────────────────────
    grounding_min_token_overlap: float = 0.6
    grounding_amount_tolerance: float = 0.01
    grounding_max_listed: int = 10

    # ── App ──────────────────────────────────────────────
    api_port: int = 8000
    log_level: str = "INFO"
    business_timezone: str = "UTC"
    entity_catalog_path: str = str(_DEFAULT_CATALOG)
    audit_log_enabled: bool = False
    audit_database_url: str = "sqlite:///copilot_audit.db"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()
