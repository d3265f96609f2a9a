"""
Centralised application settings loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Project root is two levels up from this file
_ROOT = Path(__file__).resolve().parents[2]
load_dotenv(_ROOT / ".env")


class Settings(BaseSettings):
    # ── LLM ──────────────────────────────────────────────
    llm_provider: str = "mock"  # mock | openai | anthropic
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    anthropic_model: str = "claude-3-haiku-20240307"
    llm_max_tokens: int = 1000
    llm_temperature: float = 0.0

    # ── Analytical engine ────────────────────────────────
    database_url: str = "duckdb:///:memory:"

    # ── Semantic layer ───────────────────────────────────
    semantic_layer_dir: str = str(_ROOT / "semantic_layer")

    # ── Orchestrator ─────────────────────────────────────
    max_generation_attempts: int = 3
    validation_strategy: str = "adaptive"  # strict | adaptive | fast

    # ── App ──────────────────────────────────────────────
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()
