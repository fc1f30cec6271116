from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .errors import ConfigError

# re-export for contract/tests
__all__ = [
    "AgentConfig",
    "ConfigError",
    "EngineConfig",
    "FallbackConfig",
    "McpConfig",
    "PermissionsConfig",
    "ProviderConfig",
    "RetryConfig",
    "ToolsConfig",
    "load_config",
]


_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_MCP_TRANSPORTS = {"stdio", "streamable_http", "http"}


def _expand_env_in_str(value: str, *, path: str) -> str:
    def repl(match: re.Match[str]) -> str:
        key = match.group(1)
        if not os.environ.get(key):
            raise ConfigError(f"environment variable {key!r} is not set", path=path)
        return os.environ[key]

    return _ENV_PATTERN.sub(repl, value)


def _expand_env(obj: Any, *, path: str) -> Any:
    if isinstance(obj, str):
        return _expand_env_in_str(obj, path=path)
    if isinstance(obj, list):
        return [_expand_env(v, path=path) for v in obj]
    if isinstance(obj, dict):
        return {k: _expand_env(v, path=f"{path}.{k}" if path else str(k)) for k, v in obj.items()}
    return obj


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError("must be a mapping", path=key)
    return value


def _str_list(value: Any, *, path: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(x, str) for x in value):
        raise ConfigError("must be a list of strings", path=path)
    return list(value)


def _positive_int(value: Any, *, path: str) -> int:
    try:
        out = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"must be an integer, got {value!r}", path=path) from e
    if out < 1:
        raise ConfigError("must be >= 1", path=path)
    return out


@dataclass(frozen=True)
class ProviderConfig:
    api_key: str
    name: str = "openai"
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    timeout_s: float = 120.0


@dataclass(frozen=True)
class FallbackConfig:
    """A provider/model to switch to when the current one runs out of quota.

    Unset fields inherit from the primary provider.
    """

    model: str
    name: str | None = None
    base_url: str | None = None
    api_key: str | None = None


@dataclass(frozen=True)
class AgentConfig:
    max_iterations: int = 25
    max_consecutive_errors: int = 3
    chat_mode: bool = False
    auto_approve: bool = False
    working_dir: str | None = None


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000


@dataclass(frozen=True)
class ToolsConfig:
    enabled: bool = True
    whitelist: list[str] = field(default_factory=list)
    rate_limit: dict[str, float] = field(default_factory=dict)
    bash_timeout_s: float = 120.0
    max_output_chars: int = 30_000


@dataclass(frozen=True)
class PermissionsConfig:
    allow: list[str] = field(default_factory=list)
    deny: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class McpConfig:
    """Client-side MCP configuration.

    Each server config is passed to langchain-mcp-adapters' MultiServerMCPClient as-is.
    """

    enabled: bool = False
    require_approval: bool = True
    servers: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass(frozen=True)
class EngineConfig:
    provider: ProviderConfig
    fallbacks: list[FallbackConfig] = field(default_factory=list)
    agent: AgentConfig = field(default_factory=AgentConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    permissions: PermissionsConfig = field(default_factory=PermissionsConfig)
    mcp: McpConfig = field(default_factory=McpConfig)


def _parse_provider(raw: dict[str, Any]) -> ProviderConfig:
    # api_key can default from env.
    api_key = raw.get("api_key")
    if api_key is None or api_key == "":
        api_key = os.getenv("OPENAI_API_KEY")
    if not isinstance(api_key, str) or not api_key.strip():
        raise ConfigError("must be a non-empty string (or set OPENAI_API_KEY)", path="provider.api_key")

    return ProviderConfig(
        api_key=api_key,
        name=str(raw.get("name", ProviderConfig.name)),
        base_url=str(raw.get("base_url", ProviderConfig.base_url)),
        model=str(raw.get("model", ProviderConfig.model)),
        timeout_s=float(raw.get("timeout_s", ProviderConfig.timeout_s)),
    )


def _parse_fallbacks(raw: Any) -> list[FallbackConfig]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError("must be a list", path="fallbacks")

    out: list[FallbackConfig] = []
    for i, item in enumerate(raw):
        path = f"fallbacks[{i}]"
        if isinstance(item, str):
            item = {"model": item}
        if not isinstance(item, dict):
            raise ConfigError("must be a model name or a mapping", path=path)
        model = item.get("model")
        if not isinstance(model, str) or not model.strip():
            raise ConfigError("missing required field", path=f"{path}.model")
        out.append(
            FallbackConfig(
                model=model,
                name=str(item["name"]) if item.get("name") else None,
                base_url=str(item["base_url"]) if item.get("base_url") else None,
                api_key=str(item["api_key"]) if item.get("api_key") else None,
            )
        )
    return out


def _parse_mcp(raw: dict[str, Any]) -> McpConfig:
    enabled = bool(raw.get("enabled", McpConfig.enabled))
    servers_raw = raw.get("servers") or {}
    if not isinstance(servers_raw, dict):
        raise ConfigError("must be dict[str, dict]", path="mcp.servers")

    servers: dict[str, dict[str, Any]] = {}
    for k, v in servers_raw.items():
        if not isinstance(k, str) or not k:
            raise ConfigError("server name must be a non-empty string", path="mcp.servers")
        if not isinstance(v, dict):
            raise ConfigError("server config must be a mapping", path=f"mcp.servers.{k}")
        servers[k] = dict(v)

    if enabled and not servers:
        raise ConfigError("mcp.servers is required when MCP is enabled", path="mcp.servers")

    if enabled:
        for name, scfg in servers.items():
            t = str(scfg.get("transport", ""))
            if t not in _MCP_TRANSPORTS:
                raise ConfigError(f"unsupported transport: {t!r}", path=f"mcp.servers.{name}.transport")
            if t == "stdio":
                cmd = scfg.get("command")
                if not isinstance(cmd, str) or not cmd.strip():
                    raise ConfigError("stdio requires command", path=f"mcp.servers.{name}.command")
                _str_list(scfg.get("args", []), path=f"mcp.servers.{name}.args")
            else:
                u = scfg.get("url")
                if not isinstance(u, str) or not u.strip():
                    raise ConfigError("http requires url", path=f"mcp.servers.{name}.url")

    return McpConfig(
        enabled=enabled,
        require_approval=bool(raw.get("require_approval", McpConfig.require_approval)),
        servers=servers,
    )


def load_config(path: str | Path) -> EngineConfig:
    """Load YAML config and expand ${ENV_VAR} references."""

    # Local dev: allow injecting secrets from .env (do not commit it).
    load_dotenv(override=False)

    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError("config file does not exist", path=str(config_path))

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except Exception as e:  # noqa: BLE001
        raise ConfigError(f"YAML parse failed: {e}", path=str(config_path)) from e

    if not isinstance(raw, dict):
        raise ConfigError("top level must be a YAML mapping", path=str(config_path))

    expanded = _expand_env(raw, path="")

    provider = _parse_provider(_section(expanded, "provider"))
    fallbacks = _parse_fallbacks(expanded.get("fallbacks"))

    agent_raw = _section(expanded, "agent")
    working_dir = agent_raw.get("working_dir")
    agent = AgentConfig(
        max_iterations=_positive_int(
            agent_raw.get("max_iterations", AgentConfig.max_iterations), path="agent.max_iterations"
        ),
        max_consecutive_errors=_positive_int(
            agent_raw.get("max_consecutive_errors", AgentConfig.max_consecutive_errors),
            path="agent.max_consecutive_errors",
        ),
        chat_mode=bool(agent_raw.get("chat_mode", AgentConfig.chat_mode)),
        auto_approve=bool(agent_raw.get("auto_approve", AgentConfig.auto_approve)),
        working_dir=str(working_dir) if working_dir else None,
    )

    retry_raw = _section(expanded, "retry")
    retry = RetryConfig(
        max_attempts=_positive_int(retry_raw.get("max_attempts", RetryConfig.max_attempts), path="retry.max_attempts"),
        base_delay_ms=int(retry_raw.get("base_delay_ms", RetryConfig.base_delay_ms)),
        max_delay_ms=int(retry_raw.get("max_delay_ms", RetryConfig.max_delay_ms)),
    )
    if retry.base_delay_ms < 0 or retry.max_delay_ms < retry.base_delay_ms:
        raise ConfigError("requires 0 <= base_delay_ms <= max_delay_ms", path="retry")

    tools_raw = _section(expanded, "tools")
    rate_limit = tools_raw.get("rate_limit") or {}
    if not isinstance(rate_limit, dict) or not all(isinstance(k, str) for k in rate_limit.keys()):
        raise ConfigError("must be dict[str, float]", path="tools.rate_limit")
    tools = ToolsConfig(
        enabled=bool(tools_raw.get("enabled", ToolsConfig.enabled)),
        whitelist=_str_list(tools_raw.get("whitelist"), path="tools.whitelist"),
        rate_limit={k: float(v) for k, v in rate_limit.items()},
        bash_timeout_s=float(tools_raw.get("bash_timeout_s", ToolsConfig.bash_timeout_s)),
        max_output_chars=_positive_int(
            tools_raw.get("max_output_chars", ToolsConfig.max_output_chars), path="tools.max_output_chars"
        ),
    )

    perms_raw = _section(expanded, "permissions")
    permissions = PermissionsConfig(
        allow=_str_list(perms_raw.get("allow"), path="permissions.allow"),
        deny=_str_list(perms_raw.get("deny"), path="permissions.deny"),
    )

    mcp = _parse_mcp(_section(expanded, "mcp"))

    return EngineConfig(
        provider=provider,
        fallbacks=fallbacks,
        agent=agent,
        retry=retry,
        tools=tools,
        permissions=permissions,
        mcp=mcp,
    )
