"""
Environment configuration.

Values come from the process environment, with a project-level ``.env`` file
loaded once on import. Numeric settings are clamped to sane minimums.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[2]
load_dotenv(ROOT / ".env")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_choice(name: str, default: str, choices: tuple) -> str:
    value = os.getenv(name, default).strip().lower()
    return value if value in choices else default


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Language model
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "").strip() or None
LLM_TIMEOUT_S = max(0.5, float(os.getenv("LLM_TIMEOUT_S", "10")))
LLM_MAX_TOKENS = max(64, int(os.getenv("LLM_MAX_TOKENS", "1000")))
LLM_REPAIR_MAX_TOKENS = max(64, int(os.getenv("LLM_REPAIR_MAX_TOKENS", "2000")))

# Query generation
QUERY_GENERATOR_ENV = _env_choice("QUERY_GENERATOR_ENV", "production", ("production", "test"))
QUERY_GENERATOR_STRATEGY = _env_choice("QUERY_GENERATOR_STRATEGY", "template", ("template", "ai"))
QUERY_GENERATOR_PROMPT_FLAVOR = _env_choice("QUERY_GENERATOR_PROMPT_FLAVOR", "auto", ("auto", "sql", "general"))
QUERY_GENERATOR_MAX_CONCURRENCY = min(5, max(1, int(os.getenv("QUERY_GENERATOR_MAX_CONCURRENCY", "5"))))
QUERY_TIME_RANGE_MINUTES = max(1, int(os.getenv("QUERY_TIME_RANGE_MINUTES", "15")))

# Evaluation and repair
OPTIMIZER_MAX_ATTEMPTS = max(1, int(os.getenv("OPTIMIZER_MAX_ATTEMPTS", "3")))
OPTIMIZER_PREFER_LLM = _env_bool("OPTIMIZER_PREFER_LLM", "false")
OPTIMIZER_VALIDATION_MODE = _env_choice("OPTIMIZER_VALIDATION_MODE", "execution", ("execution", "semantic"))
EVALUATOR_STATIC_CHECKS = _env_bool("EVALUATOR_STATIC_CHECKS", "true")

# Trace store
CLICKHOUSE_HOST = os.getenv("CLICKHOUSE_HOST", "localhost")
CLICKHOUSE_PORT = int(os.getenv("CLICKHOUSE_PORT", "8123"))
CLICKHOUSE_USER = os.getenv("CLICKHOUSE_USER", "default")
CLICKHOUSE_PASSWORD = os.getenv("CLICKHOUSE_PASSWORD", "")
CLICKHOUSE_DATABASE = os.getenv("CLICKHOUSE_DATABASE", "otel")
CLICKHOUSE_QUERY_TIMEOUT_S = max(1.0, float(os.getenv("CLICKHOUSE_QUERY_TIMEOUT_S", "30")))
CLICKHOUSE_MAX_ROWS = max(1, int(os.getenv("CLICKHOUSE_MAX_ROWS", "1000")))
