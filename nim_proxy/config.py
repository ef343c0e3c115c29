import json
import os
from typing import Dict, Optional


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Settings:
    def __init__(self) -> None:
        self.nim_api_base: str = os.environ.get("NIM_API_BASE", "https://integrate.api.nvidia.com/v1")
        self.nim_api_key: Optional[str] = os.environ.get("NIM_API_KEY")
        self.host: str = os.environ.get("HOST", "0.0.0.0")
        try:
            self.port: int = int(os.environ.get("PORT", "3000"))
        except Exception:
            self.port = 3000
        # Splice reasoning_content into content between <think> delimiters
        self.show_reasoning: bool = _flag("SHOW_REASONING", "1")
        # Ask the upstream chat template for thinking output on every request
        self.enable_thinking_mode: bool = _flag("ENABLE_THINKING_MODE", "1")
        # MODEL_MAP expects a JSON object string mapping public model names → NIM model names
        model_map_raw = os.environ.get("MODEL_MAP", "{}")
        try:
            self.model_map: Dict[str, str] = json.loads(model_map_raw)
        except Exception:
            self.model_map = {}
        if not isinstance(self.model_map, dict):
            self.model_map = {}
        self.default_model: str = os.environ.get("NIM_DEFAULT_MODEL", "deepseek-ai/deepseek-v3.2")
        try:
            self.default_temperature: float = float(os.environ.get("DEFAULT_TEMPERATURE", "0.6"))
        except Exception:
            self.default_temperature = 0.6
        try:
            self.default_max_tokens: int = max(1, int(os.environ.get("DEFAULT_MAX_TOKENS", "4096")))
        except Exception:
            self.default_max_tokens = 4096
        try:
            self.timeout_seconds: float = float(os.environ.get("NIM_TIMEOUT", "120"))
        except Exception:
            self.timeout_seconds = 120.0
        # How often a streaming response checks whether the client went away
        try:
            self.disconnect_poll_interval: float = max(0.01, float(os.environ.get("DISCONNECT_POLL_INTERVAL", "0.5")))
        except Exception:
            self.disconnect_poll_interval = 0.5
        self.http2: bool = _flag("PROXY_HTTP2", "0")
        self.debug: bool = _flag("DEBUG_PROXY", "")

    @property
    def chat_completions_url(self) -> str:
        return f"{self.nim_api_base.rstrip('/')}/chat/completions"


settings = Settings()
