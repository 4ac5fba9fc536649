"""Configuration for the flash-loan arbitrage pipeline."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from fractions import Fraction
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from flashcycle.src.flash_arbitrage.models import BPS_DENOMINATOR, as_fraction, intern_asset

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "flash_arbitrage.yaml"
CONFIG_SECTION = "flash_arbitrage"


@dataclass
class ArbitrageConfig:
    """Every tunable of the pipeline; amounts are in native integer units."""

    origin_assets: List[str] = field(default_factory=list)
    max_hops: int = 4
    min_net_profit: Dict[str, int] = field(default_factory=dict)
    max_utilization_fraction: Fraction = Fraction(3, 10)
    slippage_tolerance_bps: int = 50
    safety_multiple: Fraction = Fraction(6, 5)
    borrow_fee_bps: int = 5
    min_notional: Dict[str, int] = field(default_factory=dict)
    max_borrow: Dict[str, int] = field(default_factory=dict)
    beam_width: int = 8
    sample_count: int = 64
    plan_ttl: float = 12.0
    submission_timeout: float = 12.0
    venue_timeout: float = 30.0
    prefer_fresh_scans: bool = True
    profit_sink: str = "profit-sink"
    execution_cost: Dict[str, Dict[str, int]] = field(default_factory=dict)
    priority_fee_multiplier: float = 1.1
    dry_run: bool = True
    event_log_path: Optional[str] = None

    def __post_init__(self) -> None:
        if isinstance(self.origin_assets, str) or not isinstance(self.origin_assets, (list, tuple)):
            raise ValueError("origin_assets must be a list of asset identifiers")
        self.origin_assets = [intern_asset(str(asset)) for asset in self.origin_assets]
        for name in _INTEGER_OPTIONS:
            setattr(self, name, _integer(name, getattr(self, name)))
        for name in _NUMBER_OPTIONS:
            setattr(self, name, _number(name, getattr(self, name)))
        self.max_utilization_fraction = _fraction("max_utilization_fraction", self.max_utilization_fraction)
        self.safety_multiple = _fraction("safety_multiple", self.safety_multiple)
        self.min_net_profit = _amounts("min_net_profit", self.min_net_profit)
        self.min_notional = _amounts("min_notional", self.min_notional)
        self.max_borrow = _amounts("max_borrow", self.max_borrow)
        self.execution_cost = _execution_costs(self.execution_cost)
        self.validate()

    def validate(self) -> None:
        if self.max_hops < 2:
            raise ValueError("max_hops must be at least 2")
        if not 0 < self.max_utilization_fraction <= 1:
            raise ValueError("max_utilization_fraction must be within (0, 1]")
        if not 0 <= self.slippage_tolerance_bps < BPS_DENOMINATOR:
            raise ValueError("slippage_tolerance_bps must be within [0, 10000)")
        if self.safety_multiple < 1:
            raise ValueError("safety_multiple must be at least 1")
        if not 0 <= self.borrow_fee_bps < BPS_DENOMINATOR:
            raise ValueError("borrow_fee_bps must be within [0, 10000)")
        if self.beam_width <= 0:
            raise ValueError("beam_width must be positive")
        if self.sample_count < 3:
            raise ValueError("sample_count must be at least 3")
        for name in ("plan_ttl", "submission_timeout", "venue_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.priority_fee_multiplier < 1:
            raise ValueError("priority_fee_multiplier must be at least 1")
        if not self.profit_sink:
            raise ValueError("profit_sink must be provided")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ArbitrageConfig":
        known = {item.name for item in fields(cls)}
        unknown = sorted(str(key) for key in data if key not in known)
        if unknown:
            raise ValueError(f"Unknown configuration option(s): {', '.join(unknown)}")
        return cls(**{key: value for key, value in data.items() if value is not None})

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            result[item.name] = str(value) if isinstance(value, Fraction) else value
        return result


_INTEGER_OPTIONS = ("max_hops", "slippage_tolerance_bps", "borrow_fee_bps", "beam_width", "sample_count")
_NUMBER_OPTIONS = ("plan_ttl", "submission_timeout", "venue_timeout", "priority_fee_multiplier")


def _integer(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    try:
        number = Fraction(value)
    except (TypeError, ValueError, OverflowError, ZeroDivisionError) as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc
    if number.denominator != 1:
        raise ValueError(f"{name} must be an integer, got {value!r}")
    return int(number)


def _number(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def _fraction(name: str, value: Any) -> Fraction:
    try:
        return as_fraction(value)
    except (TypeError, ValueError, ZeroDivisionError) as exc:
        raise ValueError(f"{name} must be a number or fraction, got {value!r}") from exc


def _amounts(name: str, values: Any) -> Dict[str, int]:
    if not isinstance(values, Mapping):
        raise ValueError(f"{name} must map assets to integer amounts")
    result: Dict[str, int] = {}
    for asset, amount in values.items():
        try:
            value = _integer(f"{name}[{asset}]", amount)
        except ValueError as exc:
            raise ValueError(f"{name}[{asset}] must be a non-negative integer") from exc
        if value < 0:
            raise ValueError(f"{name}[{asset}] must be a non-negative integer")
        key = "default" if asset == "default" else intern_asset(str(asset))
        result[key] = value
    return result


def _execution_costs(values: Any) -> Dict[str, Dict[str, int]]:
    if not isinstance(values, Mapping):
        raise ValueError("execution_cost must map assets to {base, per_hop}")
    result: Dict[str, Dict[str, int]] = {}
    for asset, model in values.items():
        if not isinstance(model, Mapping):
            raise ValueError(f"execution_cost[{asset}] must provide base and per_hop")
        extra = set(model) - {"base", "per_hop"}
        if extra:
            raise ValueError(f"execution_cost[{asset}] has unknown keys: {', '.join(sorted(extra))}")
        key = "default" if asset == "default" else intern_asset(asset)
        result[key] = _amounts(f"execution_cost[{asset}]", model)
    return result


def _candidate_paths(config_path: Optional[Union[str, Path]]) -> List[Path]:
    if config_path:
        return [Path(config_path).expanduser()]
    candidates = [Path.cwd() / "config" / DEFAULT_CONFIG_NAME]
    packaged = Path(__file__).resolve().parents[2] / "config" / DEFAULT_CONFIG_NAME
    if packaged not in candidates:
        candidates.append(packaged)
    return candidates


def load_config(config_path: Optional[Union[str, Path]] = None) -> ArbitrageConfig:
    """Load :class:`ArbitrageConfig` from YAML.

    An explicit ``config_path`` must exist. Without one the first existing
    default location is used, falling back to the built-in defaults. The
    options may sit at the top level or under a ``flash_arbitrage`` section.
    """

    config_file: Optional[Path] = None
    for path in _candidate_paths(config_path):
        if path.exists():
            config_file = path
            break
        logger.debug(f"Config path {path} does not exist; skipping")

    if config_file is None:
        if config_path:
            raise FileNotFoundError(f"Configuration file {config_path} not found")
        logger.info("No configuration file found; using defaults")
        return ArbitrageConfig()

    try:
        data = yaml.safe_load(config_file.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"Unable to parse configuration from {config_file}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Configuration in {config_file} must be a mapping")

    for key, candidate in data.items():
        if isinstance(key, str) and key.lower() == CONFIG_SECTION:
            data = candidate or {}
            break

    config = ArbitrageConfig.from_mapping(data)
    logger.debug(f"Loaded configuration from {config_file}: {config.to_dict()}")
    return config
