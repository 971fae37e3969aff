"""Central configuration loader.

Reads env vars once at startup and exposes typed, immutable config objects.
Chain identity (USDC address, RPC list) is resolved here and threaded through
every component that needs it; nothing downstream looks it up again.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple


class ConfigError(RuntimeError):
    pass


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    return int(val)


def _env_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    return float(val)


def _env_list(name: str, default: List[str], sep: str = ",") -> List[str]:
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    return [v.strip() for v in val.split(sep) if v.strip()]


BASE_SEPOLIA_CHAIN_ID = 84532
BASE_MAINNET_CHAIN_ID = 8453

# chain_id -> (name, usdc address, default rpc endpoints)
_KNOWN_CHAINS: Dict[int, Tuple[str, str, Tuple[str, ...]]] = {
    BASE_SEPOLIA_CHAIN_ID: (
        "base-sepolia",
        "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        (
            "https://sepolia.base.org",
            "https://base-sepolia-rpc.publicnode.com",
            "https://base-sepolia.blockpi.network/v1/rpc/public",
            "https://rpc.notadegen.com/base/sepolia",
        ),
    ),
    BASE_MAINNET_CHAIN_ID: (
        "base",
        "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        (
            "https://mainnet.base.org",
            "https://base.publicnode.com",
            "https://base.meowrpc.com",
        ),
    ),
}

EXECUTION_MODES = ("gasless", "self-execute", "auto")


@dataclass(frozen=True)
class RiskLimits:
    # Atomic USDC units (6 decimals).
    max_position_size: int = 10_000_000
    max_positions: int = 5
    min_balance: int = 10_000


@dataclass(frozen=True)
class DynamicIntervals:
    fast_s: float
    base_s: float
    slow_s: float
    fast_mode_duration_s: float = 300.0


@dataclass(frozen=True)
class ActionPolicy:
    action: str
    priority: int = 0
    enabled: bool = True
    cooldown_s: Optional[float] = None
    max_per_hour: Optional[int] = None


@dataclass(frozen=True)
class CadenceConfig:
    review_interval_s: float = 60.0
    working_hours_start: int = 0
    working_hours_end: int = 23
    paused_poll_s: float = 1.0
    off_hours_poll_s: float = 60.0
    error_cooldown_s: float = 10.0
    dynamic_intervals: Optional[DynamicIntervals] = None


@dataclass(frozen=True)
class ModelSelection:
    provider: str = "x402"  # x402 | openrouter
    model: str = "openai/gpt-4o-mini"
    api_url: str = "https://api.ai.x402agentpad.io/v1/chat"
    temperature: float = 0.3
    max_tokens: int = 500
    openrouter_preset: str = "balanced"
    openrouter_strategy: str = "primary-fallback"
    openrouter_models: List[str] = field(default_factory=list)
    max_retries_per_model: int = 2


@dataclass(frozen=True)
class ChainConfig:
    chain_id: int
    name: str
    usdc_address: str
    rpc_urls: List[str]


@dataclass(frozen=True)
class PlatformConfig:
    base_url: str = "https://api.launch.x402agentpad.io"
    api_prefix: str = "api/v1"
    timeout_s: float = 60.0

    @property
    def api_root(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.api_prefix.strip('/')}"


@dataclass(frozen=True)
class AgentConfig:
    agent_id: str
    name: str
    strategy: str
    risk: RiskLimits
    cadence: CadenceConfig
    model: ModelSelection
    chain: ChainConfig
    platform: PlatformConfig
    execution_mode: str = "auto"
    action_policies: List[ActionPolicy] = field(default_factory=list)
    dashboard_url: Optional[str] = None
    mongodb_uri: Optional[str] = None

    def __post_init__(self) -> None:
        if self.execution_mode not in EXECUTION_MODES:
            raise ConfigError(
                f"Invalid execution mode {self.execution_mode!r}. Use one of {EXECUTION_MODES}."
            )
        c = self.cadence
        for h in (c.working_hours_start, c.working_hours_end):
            if not 0 <= h <= 23:
                raise ConfigError(f"Working hours must be within 0..23, got {h}")
        if self.risk.max_positions < 1:
            raise ConfigError("max_positions must be >= 1")
        if self.risk.max_position_size <= 0:
            raise ConfigError("max_position_size must be > 0")


def resolve_chain_config(
    chain_id: int,
    *,
    usdc_address: Optional[str] = None,
    rpc_urls: Optional[List[str]] = None,
) -> ChainConfig:
    """Resolve chain identity once; explicit overrides win over known defaults."""
    known = _KNOWN_CHAINS.get(chain_id)
    if known is None and (not usdc_address or not rpc_urls):
        raise ConfigError(
            f"Unsupported chain id {chain_id}. Provide USDC_ADDRESS and RPC_URLS explicitly."
        )
    name = known[0] if known else f"chain-{chain_id}"
    return ChainConfig(
        chain_id=chain_id,
        name=name,
        usdc_address=usdc_address or known[1],  # type: ignore[index]
        rpc_urls=list(rpc_urls or known[2]),  # type: ignore[index]
    )


def _env_action_map(name: str, cast: Callable[[str], Any]) -> Dict[str, Any]:
    """Parse `action:value,action:value` pairs, casting each value."""
    out: Dict[str, Any] = {}
    for item in _env_list(name, []):
        if ":" not in item:
            raise ConfigError(f"{name}: expected action:value, got {item!r}")
        action, value = item.split(":", 1)
        try:
            out[action.strip().lower()] = cast(value.strip())
        except ValueError as e:
            raise ConfigError(f"{name}: invalid value in {item!r}") from e
    return out


def load_action_policies() -> List[ActionPolicy]:
    disabled = {a.lower() for a in _env_list("AGENT_DISABLED_ACTIONS", [])}
    cooldowns = _env_action_map("AGENT_ACTION_COOLDOWNS", float)
    hourly = _env_action_map("AGENT_ACTION_MAX_PER_HOUR", int)
    priorities = [p.lower() for p in _env_list("AGENT_ACTION_PRIORITIES", [])]
    actions = sorted(set(disabled) | set(cooldowns) | set(hourly) | set(priorities))
    policies: List[ActionPolicy] = []
    for action in actions:
        policies.append(
            ActionPolicy(
                action=action,
                priority=priorities.index(action) + 1 if action in priorities else 0,
                enabled=action not in disabled,
                cooldown_s=cooldowns.get(action),
                max_per_hour=hourly.get(action),
            )
        )
    return policies


def load_config() -> AgentConfig:
    """Load agent configuration from environment."""
    risk = RiskLimits(
        max_position_size=_env_int("AGENT_MAX_POSITION_SIZE", 10_000_000),
        max_positions=_env_int("AGENT_MAX_POSITIONS", 5),
        min_balance=_env_int("AGENT_MIN_BALANCE", 10_000),
    )

    dynamic: Optional[DynamicIntervals] = None
    if _env_bool("AGENT_DYNAMIC_INTERVALS", False):
        base_s = _env_float("AGENT_INTERVAL_BASE_S", 60.0)
        dynamic = DynamicIntervals(
            fast_s=_env_float("AGENT_INTERVAL_FAST_S", base_s / 2),
            base_s=base_s,
            slow_s=_env_float("AGENT_INTERVAL_SLOW_S", base_s * 2),
            fast_mode_duration_s=_env_float("AGENT_FAST_MODE_DURATION_S", 300.0),
        )

    cadence = CadenceConfig(
        review_interval_s=_env_float("AGENT_REVIEW_INTERVAL_S", 60.0),
        working_hours_start=_env_int("AGENT_WORKING_HOURS_START", 0),
        working_hours_end=_env_int("AGENT_WORKING_HOURS_END", 23),
        dynamic_intervals=dynamic,
    )

    model = ModelSelection(
        provider=os.getenv("LLM_PROVIDER", "x402"),
        model=os.getenv("LLM_MODEL", "openai/gpt-4o-mini"),
        api_url=os.getenv("LLM_API_URL", "https://api.ai.x402agentpad.io/v1/chat"),
        temperature=_env_float("LLM_TEMPERATURE", 0.3),
        max_tokens=_env_int("LLM_MAX_TOKENS", 500),
        openrouter_preset=os.getenv("OPENROUTER_PRESET", "balanced"),
        openrouter_strategy=os.getenv("OPENROUTER_STRATEGY", "primary-fallback"),
        openrouter_models=_env_list("OPENROUTER_MODELS", []),
        max_retries_per_model=_env_int("OPENROUTER_MAX_RETRIES_PER_MODEL", 2),
    )

    chain = resolve_chain_config(
        _env_int("CHAIN_ID", BASE_SEPOLIA_CHAIN_ID),
        usdc_address=os.getenv("USDC_ADDRESS") or None,
        rpc_urls=_env_list("RPC_URLS", []) or None,
    )

    platform = PlatformConfig(
        base_url=os.getenv("PLATFORM_BASE_URL", "https://api.launch.x402agentpad.io"),
        api_prefix=os.getenv("PLATFORM_API_PREFIX", "api/v1"),
        timeout_s=_env_float("PLATFORM_TIMEOUT_S", 60.0),
    )

    return AgentConfig(
        agent_id=os.getenv("AGENT_ID", "agent_1"),
        name=os.getenv("AGENT_NAME", "Launchpad Agent"),
        strategy=os.getenv(
            "AGENT_STRATEGY",
            "Buy early tokens with rising 24h volume and take profit at +25%.",
        ),
        risk=risk,
        cadence=cadence,
        model=model,
        chain=chain,
        platform=platform,
        execution_mode=os.getenv("AGENT_EXECUTION_MODE", "auto"),
        action_policies=load_action_policies(),
        dashboard_url=os.getenv("DASHBOARD_URL") or None,
        mongodb_uri=os.getenv("MONGODB_URI") or os.getenv("MONGODB_URL"),
    )


__all__ = [
    "ActionPolicy",
    "AgentConfig",
    "CadenceConfig",
    "ChainConfig",
    "ConfigError",
    "DynamicIntervals",
    "ModelSelection",
    "PlatformConfig",
    "RiskLimits",
    "load_action_policies",
    "load_config",
    "resolve_chain_config",
]
