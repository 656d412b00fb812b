"""配置模块：版本化、不可变的配置快照"""

import dataclasses
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

from .risk import AutonomyMode

logger = logging.getLogger(__name__)

# 各 provider 的 OpenAI 兼容接口地址，None 表示 SDK 默认地址
PROVIDER_BASE_URLS: Dict[str, Optional[str]] = {
    "openai": None,
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai/",
    "anthropic": "https://api.anthropic.com/v1/",
    "ollama": None,
}

DEFAULT_MODELS: Dict[str, str] = {
    "openai": "gpt-4o",
    "gemini": "gemini-2.0-flash",
    "anthropic": "claude-3-5-haiku-latest",
    "ollama": "llama3",
}

PROVIDER_LABELS: Dict[str, str] = {
    "openai": "OpenAI",
    "gemini": "Gemini",
    "anthropic": "Anthropic",
    "ollama": "Ollama",
}

DEFAULT_OLLAMA_ENDPOINT = "http://localhost:11434/v1"


@dataclass(frozen=True)
class McpServerConfig:
    name: str
    url: str


@dataclass(frozen=True)
class AgentConfig:
    """
    一次决策调用使用的配置快照。
    更新时用 updated() 生成新快照（version + 1），不修改已有快照。
    """
    version: int = 1
    provider: str = "openai"
    api_keys: Mapping[str, str] = field(default_factory=dict)
    model: Optional[str] = None
    base_url: Optional[str] = None
    ollama_endpoint: str = DEFAULT_OLLAMA_ENDPOINT
    autonomy_mode: AutonomyMode = AutonomyMode.MANUAL
    mcp_servers: Tuple[McpServerConfig, ...] = ()
    step_delay: float = 3.0
    settle_delay: float = 1.0
    rescan_delay: float = 2.0
    inject_delay: float = 0.8
    call_timeout: float = 30.0
    rpc_timeout: float = 10.0
    max_steps: int = 50
    headless: bool = False

    def __post_init__(self):
        object.__setattr__(self, "api_keys", MappingProxyType(dict(self.api_keys)))
        object.__setattr__(self, "autonomy_mode", AutonomyMode(self.autonomy_mode))
        object.__setattr__(self, "mcp_servers", tuple(self.mcp_servers))

    @property
    def resolved_model(self) -> str:
        return self.model or DEFAULT_MODELS.get(self.provider, DEFAULT_MODELS["openai"])

    @property
    def resolved_base_url(self) -> Optional[str]:
        if self.base_url:
            return self.base_url
        if self.provider == "ollama":
            return self.ollama_endpoint
        return PROVIDER_BASE_URLS.get(self.provider)

    @property
    def api_key(self) -> Optional[str]:
        return self.api_keys.get(self.provider)

    def updated(self, **changes) -> "AgentConfig":
        changes.pop("version", None)
        return dataclasses.replace(self, version=self.version + 1, **changes)

    @classmethod
    def from_env(cls) -> "AgentConfig":
        load_dotenv()
        provider = (os.getenv("OMNI_AGENT_PROVIDER") or "openai").strip().lower()
        if provider not in PROVIDER_BASE_URLS:
            logger.warning("未知 provider %r，回退到 openai", provider)
            provider = "openai"

        api_keys = {}
        for name, env_var in (
            ("openai", "OPENAI_API_KEY"),
            ("gemini", "GEMINI_API_KEY"),
            ("anthropic", "ANTHROPIC_API_KEY"),
        ):
            value = os.getenv(env_var)
            if value:
                api_keys[name] = value

        mode = (os.getenv("OMNI_AGENT_AUTONOMY") or "manual").strip().lower()
        try:
            autonomy = AutonomyMode(mode)
        except ValueError:
            logger.warning("未知自主模式 %r，回退到 manual", mode)
            autonomy = AutonomyMode.MANUAL

        return cls(
            provider=provider,
            api_keys=api_keys,
            model=os.getenv("OMNI_AGENT_MODEL") or None,
            base_url=os.getenv("OMNI_AGENT_BASE_URL") or None,
            ollama_endpoint=os.getenv("OMNI_AGENT_OLLAMA_ENDPOINT") or DEFAULT_OLLAMA_ENDPOINT,
            autonomy_mode=autonomy,
            mcp_servers=parse_mcp_servers(os.getenv("OMNI_AGENT_MCP_SERVERS")),
            step_delay=_to_float(os.getenv("OMNI_AGENT_STEP_DELAY"), 3.0),
            max_steps=_to_positive_int(os.getenv("OMNI_AGENT_MAX_STEPS"), 50),
            headless=(os.getenv("OMNI_AGENT_HEADLESS") or "").strip().lower() in {"1", "true", "yes", "on"},
        )


class ConfigStore:
    """持有当前配置快照；update() 原子地替换为新快照"""

    def __init__(self, config: Optional[AgentConfig] = None):
        self._lock = threading.Lock()
        self._current = config or AgentConfig()

    @property
    def current(self) -> AgentConfig:
        return self._current

    def update(self, **changes) -> AgentConfig:
        with self._lock:
            self._current = self._current.updated(**changes)
            return self._current


def parse_mcp_servers(raw: Optional[str]) -> Tuple[McpServerConfig, ...]:
    """解析 JSON 列表：[{"name": ..., "url": ...}, ...]"""
    if not raw:
        return ()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("OMNI_AGENT_MCP_SERVERS 不是合法 JSON: %s", exc)
        return ()
    if not isinstance(data, list):
        return ()
    servers = []
    for entry in data:
        if isinstance(entry, dict) and entry.get("name") and entry.get("url"):
            servers.append(McpServerConfig(name=str(entry["name"]), url=str(entry["url"])))
    return tuple(servers)


def _to_float(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _to_positive_int(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default
