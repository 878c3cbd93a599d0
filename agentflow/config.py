import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "AGENTFLOW_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

_LIST_KEYS = (
    "classification_models",
    "planning_models",
    "fast_models",
    "vision_models",
    "transcription_models",
)
_INT_KEYS = ("max_output_tokens", "retrieval_top_k", "ingest_max_mb", "history_limit", "port")
_FLOAT_KEYS = ("call_timeout_s", "workflow_deadline_s", "workflow_ttl_s", "sweep_interval_s")


class AppSettings(BaseModel):
    # OpenAI-compatible generation endpoint
    llm_base_url: str = "https://api.groq.com/openai/v1"
    llm_api_key: Optional[str] = None
    max_output_tokens: Optional[int] = None

    # Candidate tiers, tried strictly in order
    classification_models: List[str] = Field(
        default_factory=lambda: ["llama-3.3-8b-instant", "llama-3.1-8b-instant", "gemma2-9b-it"]
    )
    planning_models: List[str] = Field(
        default_factory=lambda: ["llama-3.3-70b-versatile", "llama-3.3-70b-specdec", "mixtral-8x7b-32768"]
    )
    fast_models: List[str] = Field(
        default_factory=lambda: ["llama-3.1-8b-instant", "gemma2-9b-it", "mixtral-8x7b-32768"]
    )
    vision_models: List[str] = Field(
        default_factory=lambda: [
            "meta-llama/llama-4-scout-17b-16e-instruct",
            "meta-llama/llama-4-maverick-17b-128e-instruct",
        ]
    )
    transcription_models: List[str] = Field(
        default_factory=lambda: ["whisper-large-v3", "whisper-large-v3-turbo"]
    )

    # Timing
    call_timeout_s: float = 30.0
    workflow_deadline_s: float = 120.0
    workflow_ttl_s: float = 300.0
    sweep_interval_s: float = 30.0

    # Knowledge retrieval
    retrieval_url: Optional[str] = None
    retrieval_api_key: Optional[str] = None
    ingest_url: Optional[str] = None
    ingest_max_mb: int = 5
    retrieval_top_k: int = 3
    history_limit: int = 5

    database_path: str = "agentflow.db"
    host: str = "0.0.0.0"
    port: int = 8000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in ("llm_api_key", "retrieval_api_key"):
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "llm_base_url": os.getenv("LLM_BASE_URL"),
        "llm_api_key": os.getenv("LLM_API_KEY") or os.getenv("GROQ_API_KEY"),
        "max_output_tokens": os.getenv("MAX_OUTPUT_TOKENS"),
        "classification_models": os.getenv("CLASSIFICATION_MODELS"),
        "planning_models": os.getenv("PLANNING_MODELS"),
        "fast_models": os.getenv("FAST_MODELS"),
        "vision_models": os.getenv("VISION_MODELS"),
        "transcription_models": os.getenv("TRANSCRIPTION_MODELS"),
        "call_timeout_s": os.getenv("CALL_TIMEOUT_S"),
        "workflow_deadline_s": os.getenv("WORKFLOW_DEADLINE_S"),
        "workflow_ttl_s": os.getenv("WORKFLOW_TTL_S"),
        "sweep_interval_s": os.getenv("SWEEP_INTERVAL_S"),
        "retrieval_url": os.getenv("RETRIEVAL_URL"),
        "retrieval_api_key": os.getenv("RETRIEVAL_API_KEY"),
        "ingest_url": os.getenv("INGEST_URL"),
        "ingest_max_mb": os.getenv("INGEST_MAX_MB"),
        "retrieval_top_k": os.getenv("RETRIEVAL_TOP_K"),
        "history_limit": os.getenv("HISTORY_LIMIT"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned: Dict[str, Any] = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in _LIST_KEYS:
        if key in cleaned:
            cleaned[key] = _split_list(cleaned[key])
    for key in _INT_KEYS:
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in _FLOAT_KEYS:
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except ValueError:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # Secrets are rarely committed to config.json; fall back to the environment.
    for secret in ("llm_api_key", "retrieval_api_key"):
        if not merged.get(secret) and env_data.get(secret):
            merged[secret] = env_data[secret]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
