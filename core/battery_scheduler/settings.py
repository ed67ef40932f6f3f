"""Core configuration values and types for the battery scheduler using dataclasses."""

from dataclasses import dataclass, field
from typing import Any

from .exceptions import SystemConfigurationError

# Battery settings defaults
BATTERY_STORAGE_SIZE_KWH = 9.9
BATTERY_MAX_CHARGE_POWER_KW = 6.0
BATTERY_TARGET_SOC = 85  # percentage
BATTERY_MIN_SOC = 7  # percentage
BATTERY_EFFICIENCY_LOSS = 10  # percentage, applied per direction

# Optimization defaults
MIN_PROFIT_PER_KWH = 0.06  # EUR/kWh required above the cost basis
EXPENSIVE_PRICE_FACTOR = 1.05  # x average horizon price
SOLAR_FEED_IN_TARIFF = 0.07  # EUR/kWh lost when solar goes into the battery
DEFAULT_LOAD_KW = 3.0  # assumed house load without history
SOLVER_TIME_LIMIT_S = 10.0
FORECAST_DAYS = 7  # days of samples kept per interval of day

# Decision defaults
SOLAR_START_THRESHOLD_W = 50
KICKSTART_WINDOW_START_MIN = 4 * 60  # 04:00
KICKSTART_WINDOW_END_MIN = 11 * 60 + 30  # 11:30
KICKSTART_DURATION_MIN = 5

# Ledger defaults
MAX_LEDGER_DAYS = 7
MAX_LEDGER_ENTRIES = MAX_LEDGER_DAYS * 96
MIN_TRACKED_KWH = 0.001


def _update_fields(target: Any, values: dict[str, Any]) -> None:
    for key, value in values.items():
        if hasattr(target, key):
            setattr(target, key, value)


@dataclass
class BatterySettings:
    """Battery settings with canonical snake_case names only."""

    total_capacity: float = BATTERY_STORAGE_SIZE_KWH
    max_charge_power_kw: float = BATTERY_MAX_CHARGE_POWER_KW
    target_soc: float = BATTERY_TARGET_SOC  # percentage
    min_soc: float = BATTERY_MIN_SOC  # percentage
    efficiency_loss: float = BATTERY_EFFICIENCY_LOSS  # percentage
    min_soc_kwh: float = field(init=False)
    max_soc_kwh: float = field(init=False)

    def __post_init__(self):
        self.min_soc_kwh = self.total_capacity * self.min_soc / 100.0
        self.max_soc_kwh = self.total_capacity * self.target_soc / 100.0

    @property
    def efficiency_loss_fraction(self) -> float:
        return max(0.0, min(100.0, self.efficiency_loss)) / 100.0

    def update(self, **kwargs: Any) -> None:
        """Update settings from dict."""
        _update_fields(self, kwargs)
        self.__post_init__()

    def validate(self) -> None:
        """Raise SystemConfigurationError for physically impossible values."""
        if self.total_capacity <= 0:
            raise SystemConfigurationError(
                "battery", f"total_capacity must be positive, got {self.total_capacity}"
            )
        if self.max_charge_power_kw <= 0:
            raise SystemConfigurationError(
                "battery",
                f"max_charge_power_kw must be positive, got {self.max_charge_power_kw}",
            )
        if not 0 <= self.min_soc <= self.target_soc <= 100:
            raise SystemConfigurationError(
                "battery",
                f"expected 0 <= min_soc ({self.min_soc}) <= target_soc "
                f"({self.target_soc}) <= 100",
            )
        if not 0 <= self.efficiency_loss < 100:
            raise SystemConfigurationError(
                "battery",
                f"efficiency_loss must be within [0, 100), got {self.efficiency_loss}",
            )

    def from_config(self, config: dict) -> "BatterySettings":
        if "battery" in config:
            battery_config = config["battery"]
            self.total_capacity = battery_config.get(
                "total_capacity", BATTERY_STORAGE_SIZE_KWH
            )
            self.max_charge_power_kw = battery_config.get(
                "max_charge_power_kw", BATTERY_MAX_CHARGE_POWER_KW
            )
            self.target_soc = battery_config.get("target_soc", BATTERY_TARGET_SOC)
            self.min_soc = battery_config.get("min_soc", BATTERY_MIN_SOC)
            self.efficiency_loss = battery_config.get(
                "efficiency_loss", BATTERY_EFFICIENCY_LOSS
            )
            self.__post_init__()
        return self


@dataclass
class OptimizerSettings:
    """Economic parameters for the planner."""

    min_profit_per_kwh: float = MIN_PROFIT_PER_KWH
    expensive_price_factor: float = EXPENSIVE_PRICE_FACTOR
    solar_feed_in_tariff: float = SOLAR_FEED_IN_TARIFF
    use_lp_solver: bool = True
    fallback_to_heuristic: bool = True
    default_load_kw: float = DEFAULT_LOAD_KW
    # Consumption samples are signed grid power instead of house load
    consumption_is_grid_net: bool = False
    solver_time_limit_s: float = SOLVER_TIME_LIMIT_S
    forecast_days: int = FORECAST_DAYS

    def update(self, **kwargs: Any) -> None:
        """Update settings from dict."""
        _update_fields(self, kwargs)

    def from_config(self, config: dict) -> "OptimizerSettings":
        if "optimizer" in config:
            self.update(**config["optimizer"])
        return self


@dataclass
class DecisionSettings:
    """Thresholds for the mode decision and the PV kickstart."""

    solar_start_threshold_w: float = SOLAR_START_THRESHOLD_W
    kickstart_window_start_min: int = KICKSTART_WINDOW_START_MIN
    kickstart_window_end_min: int = KICKSTART_WINDOW_END_MIN
    kickstart_duration_min: int = KICKSTART_DURATION_MIN
    min_soc: float = BATTERY_MIN_SOC  # percentage

    def update(self, **kwargs: Any) -> None:
        """Update settings from dict."""
        _update_fields(self, kwargs)

    def from_config(self, config: dict) -> "DecisionSettings":
        if "decision" in config:
            self.update(**config["decision"])
        if "battery" in config and "min_soc" in config["battery"]:
            self.min_soc = config["battery"]["min_soc"]
        return self


@dataclass
class LedgerSettings:
    """Retention bounds for the battery cost ledger."""

    max_entries: int = MAX_LEDGER_ENTRIES
    min_tracked_kwh: float = MIN_TRACKED_KWH

    def update(self, **kwargs: Any) -> None:
        """Update settings from dict."""
        _update_fields(self, kwargs)

    def from_config(self, config: dict) -> "LedgerSettings":
        if "ledger" in config:
            self.update(**config["ledger"])
        return self
