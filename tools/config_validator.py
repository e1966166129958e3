"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas and builds the
typed TraderConfig used by the runner.

Usage:
    from tools.config_validator import validate_all_configs, load_config

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)

    config = load_config("config")
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from core.endpoint_pool import Endpoint, EndpointKind
from core.exit_policy import ExitTier, RoleExitPolicy
from core.position_state import PositionRole
from core.resilient_client import RetryPolicy
from core.strategy_profile import StrategyProfile

logger = logging.getLogger(__name__)

HELIUS_RPC_URL = "https://mainnet.helius-rpc.com/?api-key={key}"


# ===== App Schema =====
class AppSection(BaseModel):
    """Process mode and wallet"""
    mode: str = Field(default="PAPER", pattern="^(PAPER|LIVE)$", description="Trading mode")
    wallet_address: Optional[str] = Field(default=None, description="Wallet whose SOL balance counts as capital")
    paper_starting_balance: float = Field(default=1.0, ge=0, description="PAPER mode starting SOL")
    paper_slippage_pct: float = Field(default=0.0, ge=0, lt=100, description="PAPER mode simulated slippage %")


class LoggingConfig(BaseModel):
    """Logging parameters"""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = Field(default="logs/memetrader.log", description="Log file path (null disables)")


class StateConfig(BaseModel):
    """Persistence parameters"""
    positions_file: str = Field(default="data/positions.json", min_length=1)
    lock_file: str = Field(default="data/memetrader.pid", min_length=1)


class MetricsConfig(BaseModel):
    """Prometheus exporter"""
    enabled: bool = Field(default=False)
    port: int = Field(default=9100, gt=0, lt=65536)


class LoopConfig(BaseModel):
    """Scheduler parameters"""
    jitter_pct: float = Field(default=10.0, ge=0, le=20, description="Random extra sleep %")
    housekeeping_interval_seconds: float = Field(default=300.0, gt=0)


class EndpointEntry(BaseModel):
    """Single endpoint"""
    url: str = Field(min_length=1)
    priority: int = Field(default=1, ge=0, description="Lower is preferred")

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Endpoint url must be http(s), got {v}")
        return v


class EndpointsConfig(BaseModel):
    """Endpoints per kind"""
    rpc: List[EndpointEntry] = Field(default_factory=list)
    price: List[EndpointEntry] = Field(min_length=1)


class ResilienceConfig(BaseModel):
    """Breaker, retry and cache tunables"""
    breaker_threshold: int = Field(default=5, gt=0, description="Consecutive failures that open a breaker")
    cooldown_window_seconds: float = Field(default=300.0, gt=0, description="Breaker open duration")
    rate_limit_cooldown_seconds: float = Field(default=60.0, gt=0, description="Bench duration after 429")
    max_attempts: int = Field(default=3, gt=0)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=8.0, ge=0)
    jitter_pct: float = Field(default=25.0, ge=0, le=100)
    attempt_timeout_seconds: Optional[float] = Field(default=15.0, gt=0)
    balance_cache_ttl_seconds: float = Field(default=30.0, gt=0)
    cache_max_stale_seconds: float = Field(default=3600.0, gt=0, description="Housekeeping purge age")

    @field_validator('backoff_max_seconds')
    @classmethod
    def validate_backoff(cls, v: float, info) -> float:
        """Ensure backoff_max_seconds >= backoff_base_seconds"""
        base = info.data.get('backoff_base_seconds', 0)
        if v < base:
            raise ValueError(f"backoff_max_seconds ({v}) must be >= backoff_base_seconds ({base})")
        return v


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    endpoints: EndpointsConfig
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)


# ===== Policy Schema =====
class ProfileEntry(BaseModel):
    """Strategy profile milestone"""
    name: str = Field(min_length=1)
    min_capital: float = Field(ge=0)
    max_position_fraction: float = Field(gt=0, le=1)
    stop_loss_percent: float = Field(lt=0, description="Negative, e.g. -15")
    take_profit_percent: float = Field(gt=0)
    trailing_stop_percent: float = Field(gt=0, lt=1, description="Fraction, e.g. 0.08")
    poll_interval_ms: int = Field(gt=0)
    max_hold_duration_ms: Optional[int] = Field(default=None, gt=0)
    price_cache_ttl_ms: int = Field(default=60_000, gt=0)


class TierEntry(BaseModel):
    """Role take-profit tier"""
    name: str = Field(min_length=1)
    threshold_percent: float = Field(gt=0)
    sell_fraction: float = Field(gt=0, le=1)


class RoleEntry(BaseModel):
    """Role exit overrides"""
    trailing_stop_percent: Optional[float] = Field(default=None, gt=0, lt=1)
    stop_loss_percent: Optional[float] = Field(default=None, lt=0)
    max_hold_ms: Optional[int] = Field(default=None, gt=0)
    unbounded_hold: bool = Field(default=False)
    tiers: List[TierEntry] = Field(default_factory=list)

    @field_validator('tiers')
    @classmethod
    def validate_tiers(cls, v: List[TierEntry]) -> List[TierEntry]:
        names = [tier.name for tier in v]
        if len(set(names)) != len(names):
            raise ValueError(f"Tier names must be unique, got {names}")
        return v


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    emergency_floor_percent: float = Field(default=-40.0, lt=0)
    profiles: List[ProfileEntry] = Field(min_length=1)
    roles: Dict[str, RoleEntry] = Field(default_factory=dict)

    @field_validator('profiles')
    @classmethod
    def validate_profile_order(cls, v: List[ProfileEntry]) -> List[ProfileEntry]:
        """Profiles must be listed by unique ascending min_capital"""
        floors = [profile.min_capital for profile in v]
        if floors != sorted(floors) or len(set(floors)) != len(floors):
            raise ValueError(f"profiles must be ordered by unique ascending min_capital, got {floors}")
        names = [profile.name for profile in v]
        if len(set(names)) != len(names):
            raise ValueError(f"profile names must be unique, got {names}")
        return v

    @field_validator('roles')
    @classmethod
    def validate_role_names(cls, v: Dict[str, RoleEntry]) -> Dict[str, RoleEntry]:
        known = {role.value for role in PositionRole}
        for name in v:
            if name.upper() not in known:
                raise ValueError(f"Unknown role {name}, expected one of {sorted(known)}")
        return v


class TraderConfig(BaseModel):
    """Validated app + policy, with builders for core objects"""
    app: AppSchema
    policy: PolicySchema

    @model_validator(mode="after")
    def validate_live_wallet(self) -> "TraderConfig":
        if self.app.app.mode == "LIVE" and not self.app.app.wallet_address:
            raise ValueError("LIVE mode requires app.wallet_address")
        return self

    def strategy_profiles(self) -> List[StrategyProfile]:
        return [StrategyProfile(**entry.model_dump()) for entry in self.policy.profiles]

    def role_policies(self) -> Dict[PositionRole, RoleExitPolicy]:
        policies = {}
        for name, entry in self.policy.roles.items():
            policies[PositionRole(name.upper())] = RoleExitPolicy(
                trailing_stop_percent=entry.trailing_stop_percent,
                stop_loss_percent=entry.stop_loss_percent,
                max_hold_ms=entry.max_hold_ms,
                unbounded_hold=entry.unbounded_hold,
                tiers=tuple(ExitTier(t.name, t.threshold_percent, t.sell_fraction) for t in entry.tiers),
            )
        return policies

    def endpoints(self, helius_api_key: Optional[str] = None) -> List[Endpoint]:
        """Configured endpoints; a Helius key adds a priority-0 RPC endpoint"""
        endpoints = [Endpoint(e.url, EndpointKind.RPC, e.priority) for e in self.app.endpoints.rpc]
        endpoints += [Endpoint(e.url, EndpointKind.PRICE, e.priority) for e in self.app.endpoints.price]
        if helius_api_key:
            endpoints.insert(0, Endpoint(HELIUS_RPC_URL.format(key=helius_api_key), EndpointKind.RPC, 0))
        return endpoints

    def retry_policy(self) -> RetryPolicy:
        resilience = self.app.resilience
        return RetryPolicy(
            max_attempts=resilience.max_attempts,
            backoff_base_seconds=resilience.backoff_base_seconds,
            backoff_max_seconds=resilience.backoff_max_seconds,
            jitter_pct=resilience.jitter_pct,
            attempt_timeout_seconds=resilience.attempt_timeout_seconds,
        )


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    raw_lines = file_path.read_text().splitlines()
    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))

    snippet_lines: List[str] = []
    for idx in range(start, end):
        pointer = "▶" if idx == line else " "
        snippet_lines.append(f"{pointer} {idx + 1:04d} | {raw_lines[idx]}")

    snippet = "\n".join(snippet_lines)
    problem = getattr(error, "problem", str(error))

    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: top level must be a mapping ({e})")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_policy(config_dir: Path) -> List[str]:
    """Validate policy.yaml against schema."""
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency across app.yaml and policy.yaml.

    Detects:
    - LIVE mode without a wallet
    - No RPC endpoint configured
    - Role or profile stop-loss at or below the emergency floor (it could never fire)
    """
    errors = []
    app = AppSchema(**load_yaml_file(config_dir / "app.yaml"))
    policy = PolicySchema(**load_yaml_file(config_dir / "policy.yaml"))

    if app.app.mode == "LIVE" and not app.app.wallet_address:
        errors.append("app.yaml: app -> wallet_address: required in LIVE mode")

    if not app.endpoints.rpc and not os.getenv("HELIUS_API_KEY"):
        errors.append("app.yaml: endpoints -> rpc: at least one RPC endpoint (or HELIUS_API_KEY) is required")

    floor = policy.emergency_floor_percent
    for name, role in policy.roles.items():
        if role.stop_loss_percent is not None and role.stop_loss_percent <= floor:
            errors.append(
                f"policy.yaml: roles -> {name} -> stop_loss_percent: {role.stop_loss_percent} "
                f"is not above emergency_floor_percent {floor} and can never fire"
            )
        if role.unbounded_hold and role.max_hold_ms is not None:
            errors.append(f"policy.yaml: roles -> {name}: unbounded_hold and max_hold_ms are mutually exclusive")

    for profile in policy.profiles:
        if profile.stop_loss_percent <= floor:
            errors.append(
                f"policy.yaml: profiles -> {profile.name} -> stop_loss_percent: {profile.stop_loss_percent} "
                f"is not above emergency_floor_percent {floor} and can never fire"
            )

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


def load_config(config_dir: str = "config") -> TraderConfig:
    """
    Validate and load configuration.

    POSITIONS_FILE overrides state.positions_file.

    Raises:
        ValueError: If any validation error is found
    """
    errors = validate_all_configs(config_dir)
    if errors:
        raise ValueError(f"Invalid configuration: {len(errors)} error(s) found:\n" + "\n".join(errors))

    config_path = Path(config_dir)
    config = TraderConfig(
        app=AppSchema(**load_yaml_file(config_path / "app.yaml")),
        policy=PolicySchema(**load_yaml_file(config_path / "policy.yaml")),
    )

    positions_override = os.getenv("POSITIONS_FILE")
    if positions_override:
        config.app.state.positions_file = positions_override
    return config


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else os.getenv("MEMETRADER_CONFIG_DIR", "config")

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
