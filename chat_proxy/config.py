import os
from typing import Mapping, Optional, Set


DEFAULT_API_BASE = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o"
DEFAULT_BETA = "responses-2024-12-17"
DEFAULT_SYSTEM_PROMPT = (
    "You are a senior bilingual (中英双语) analyst and writer. When the user asks for explanations, "
    "think step-by-step but keep the final answer concise, structured, and actionable. Prefer clear "
    "headings and short lists. Add quick checks or caveats when needed. If you are unsure, say so and "
    "state your assumptions. Use simple, precise wording; avoid purple prose. "
    "默认用用户的语言回答；如果用户用中文，你用中文并保留必要的英文术语。"
)
# Only these models are sent the hosted search tool; others reject it with a 400
DEFAULT_TOOL_MODELS = "gpt-4o,gpt-4o-2024-11-20,gpt-4o-mini,gpt-4.1,gpt-4.1-mini"


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _float(value: Optional[str], default: Optional[float]) -> Optional[float]:
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _int(value: Optional[str], default: Optional[int]) -> Optional[int]:
    if value is None or not value.strip():
        return default
    try:
        return int(float(value))
    except ValueError:
        return default


class Settings:
    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        env = os.environ if environ is None else environ
        self.openai_api_key: Optional[str] = env.get("OPENAI_API_KEY") or None
        # Raw overrides are kept so /api/debug can report "not set"
        self.model_override: Optional[str] = env.get("OPENAI_MODEL") or None
        self.api_base_override: Optional[str] = env.get("OPENAI_API_BASE") or None
        self.api_base: str = (self.api_base_override or DEFAULT_API_BASE).strip().rstrip("/")
        self.model: str = (self.model_override or DEFAULT_MODEL).strip()
        self.openai_beta: str = env.get("OPENAI_BETA") or DEFAULT_BETA
        self.system_prompt: str = env.get("SYSTEM_PROMPT") or DEFAULT_SYSTEM_PROMPT

        self.native_tools: bool = _flag(env.get("OPENAI_NATIVE_TOOLS"))
        tool_models_raw = env.get("OPENAI_TOOL_MODELS") or DEFAULT_TOOL_MODELS
        self.tool_models: Set[str] = {m.strip() for m in tool_models_raw.split(",") if m.strip()}
        # Models matching this pattern reject temperature/top_p and take reasoning.effort instead
        self.reasoning_model_pattern: str = env.get("OPENAI_REASONING_MODEL_PATTERN") or "thinking"
        self.reasoning_effort: str = env.get("OPENAI_REASONING_EFFORT") or "medium"

        self.max_output_tokens: int = max(1, _int(env.get("OPENAI_MAX_TOKENS"), 1024) or 1024)
        self.temperature: float = _float(env.get("OPENAI_TEMPERATURE"), 0.7)  # type: ignore[assignment]
        self.top_p: float = _float(env.get("OPENAI_TOP_P"), 1.0)  # type: ignore[assignment]
        self.seed: Optional[int] = _int(env.get("OPENAI_SEED"), None)

        self.request_timeout: float = _float(env.get("REQUEST_TIMEOUT_SECONDS"), 45.0)  # type: ignore[assignment]
        self.heartbeat_interval: float = _float(env.get("HEARTBEAT_SECONDS"), 8.0)  # type: ignore[assignment]
        self.first_packet_timeout: float = _float(env.get("FIRST_PACKET_SECONDS"), 12.0)  # type: ignore[assignment]

        self.debug_events: bool = _flag(env.get("DEBUG_EVENTS"))
        self.debug_dump: bool = _flag(env.get("DEBUG_DUMP"))

        self.static_dir: Optional[str] = env.get("STATIC_DIR") or None
        self.log_level: str = (env.get("LOG_LEVEL") or "INFO").upper()
        self.host: str = env.get("HOST") or "0.0.0.0"
        self.port: int = _int(env.get("PORT"), 8787) or 8787

    def supports_tools(self, model: str) -> bool:
        return self.native_tools and model in self.tool_models


def get_settings() -> Settings:
    """Settings are rebuilt from the environment for every request."""
    return Settings()
