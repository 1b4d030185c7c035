"""
Configuration Validation Module

Validates app.yaml and bots.yaml against Pydantic schemas.
Ensures config files are correct before the arena starts.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

KNOWN_PLACEHOLDERS = {
    "totalValue", "availableBalance", "unrealizedPnl", "openPositions", "marketData", "currentDate",
}
_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


# ===== App Schema =====
class AppSection(BaseModel):
    mode: str = Field(default="PAPER", pattern="^PAPER$", description="Engine runs paper ledgers only")
    name: str = "quant-arena"


class LoopConfig(BaseModel):
    interval_seconds: float = Field(default=300, ge=5, description="Seconds between scheduled cycles")
    price_refresh_seconds: float = Field(default=5, gt=0, description="Seconds between price ticks")
    jitter_pct: float = Field(default=10.0, ge=0, le=20, description="Random extra sleep, % of interval")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = "logs/quant-arena.log"


class StateConfig(BaseModel):
    path: str = "data/arena_state.json"


class MarketDataConfig(BaseModel):
    provider: str = Field(default="binance_futures", pattern="^(binance_futures|static)$")
    base_url: Optional[str] = None
    history_interval: str = "1h"
    history_limit: int = Field(default=100, ge=30, le=1500)
    timeout_seconds: float = Field(default=5.0, gt=0)
    prices: Optional[Dict[str, float]] = None
    changes: Optional[Dict[str, float]] = None


class OracleConfig(BaseModel):
    provider: str = Field(default="mock", pattern="^(openai|anthropic|openai_compatible|mock)$")
    model: Optional[str] = None
    api_key_env: Optional[str] = None
    base_url: Optional[str] = None
    call_timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    max_iterations: int = Field(default=5, ge=1, le=10)
    cycle_budget_seconds: float = Field(default=30.0, gt=0)
    max_prompt_chars: int = Field(default=500_000, gt=1000)

    @model_validator(mode="after")
    def _timeouts(self) -> "OracleConfig":
        if self.call_timeout_seconds > self.cycle_budget_seconds:
            raise ValueError(
                f"call_timeout_seconds ({self.call_timeout_seconds}) exceeds "
                f"cycle_budget_seconds ({self.cycle_budget_seconds})"
            )
        return self


class LedgerSection(BaseModel):
    cooldown_minutes: float = Field(default=30, ge=0)
    min_trade_size_usd: float = Field(default=50, ge=0)
    fee_rate: float = Field(default=0.0, ge=0, lt=0.5)
    max_leverage: int = Field(default=125, ge=1, le=125)
    symbol_max_leverage: Dict[str, int] = Field(default_factory=dict)

    @field_validator("symbol_max_leverage")
    @classmethod
    def _symbol_caps(cls, v: Dict[str, int]) -> Dict[str, int]:
        for symbol, cap in v.items():
            if cap < 1 or cap > 125:
                raise ValueError(f"{symbol} leverage cap must be within [1, 125], got {cap}")
        return v


class DecisionLogConfig(BaseModel):
    history_window: int = Field(default=5, ge=5, le=50)
    max_entries: int = Field(default=50, ge=5, le=1000)


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, ge=1, le=65535)
    health_enabled: bool = False
    health_port: int = Field(default=8081, ge=0, le=65535)
    alerts: Dict[str, Any] = Field(default_factory=dict)


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection = Field(default_factory=AppSection)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    ledger: LedgerSection = Field(default_factory=LedgerSection)
    decision_log: DecisionLogConfig = Field(default_factory=DecisionLogConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


# ===== Bots Schema =====
class BotSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1, pattern=r"^[A-Za-z0-9_\-]+$")
    name: Optional[str] = None
    prompt: Optional[str] = None
    symbols: List[str] = Field(default_factory=list)
    initial_balance: float = Field(default=10_000.0, gt=0)
    paused: bool = False
    sandbox_enabled: bool = True
    oracle: Optional[OracleConfig] = None

    @field_validator("symbols")
    @classmethod
    def _symbols(cls, v: List[str]) -> List[str]:
        for symbol in v:
            if not re.fullmatch(r"[A-Z0-9]{2,20}", symbol):
                raise ValueError(f"symbol must be uppercase alphanumeric (e.g. BTCUSDT), got {symbol!r}")
        if len(set(v)) != len(v):
            raise ValueError("symbols contain duplicates")
        return v

    @field_validator("prompt")
    @classmethod
    def _placeholders(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        unknown = set(_PLACEHOLDER_RE.findall(v)) - KNOWN_PLACEHOLDERS
        if unknown:
            raise ValueError(f"unknown prompt placeholder(s): {sorted(unknown)}")
        return v


class BotsSchema(BaseModel):
    """Complete bots configuration schema"""
    bots: List[BotSchema] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_ids(self) -> "BotsSchema":
        ids = [b.id for b in self.bots]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"duplicate bot id(s): {duplicates}")
        return self


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

    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return (
            f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: "
            f"{getattr(error, 'problem', str(error))}"
        )

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


def _validate_file(config_dir: Path, name: str, schema) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / name)
        if not isinstance(config, dict):
            return [f"{name}: top level must be a mapping"]
        schema(**config)
        logger.info(f"✅ {name} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{name}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{name}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{name}: {field}: {error['msg']}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_bots(config_dir: Path) -> List[str]:
    """Validate bots.yaml against schema."""
    return _validate_file(config_dir, "bots.yaml", BotsSchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Cross-file consistency checks (run only after schemas pass).

    - bot symbols must be priced by a static market data provider
    - symbol leverage caps must not exceed the global cap
    """
    errors: List[str] = []
    app = AppSchema(**load_yaml_file(config_dir / "app.yaml"))
    bots = BotsSchema(**load_yaml_file(config_dir / "bots.yaml"))

    for symbol, cap in app.ledger.symbol_max_leverage.items():
        if cap > app.ledger.max_leverage:
            errors.append(
                f"app.yaml: ledger -> symbol_max_leverage -> {symbol}: cap {cap} exceeds max_leverage "
                f"{app.ledger.max_leverage}"
            )

    if app.market_data.provider == "static":
        priced = set((app.market_data.prices or {}).keys())
        if not priced:
            errors.append("app.yaml: market_data -> prices: static provider needs at least one price")
        for bot in bots.bots:
            missing = sorted(set(bot.symbols) - priced)
            if missing:
                errors.append(f"bots.yaml: {bot.id}: symbols not priced by static market data: {missing}")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Args:
        config_dir: Path to config directory (string or Path)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_bots(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

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
