"""Shared test fixtures for battery scheduler tests."""

import logging
import os
import sys
from datetime import timedelta

import pytest

# Add the project root to Python path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../../.."))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from core.battery_scheduler.models import (  # noqa: E402
    BatteryMode,
    BatteryState,
    DemandHistory,
    MeterReading,
    PriceInterval,
)
from core.battery_scheduler.time_utils import enrich_price_data  # noqa: E402


def build_horizon(start, prices, interval_minutes=15):
    """Enriched price intervals starting at ``start``."""
    intervals = [
        PriceInterval(starts_at=start + timedelta(minutes=interval_minutes * i), price=p)
        for i, p in enumerate(prices)
    ]
    return enrich_price_data(intervals, interval_minutes)


class MockDeviceController:
    """Mock device controller for testing."""

    def __init__(self) -> None:
        """Initialize with default readings."""
        self.settings = {
            "battery_soc": 50.0,
            "grid_power": 500.0,
            "solar_power": 0.0,
            "battery_power": 0.0,
        }
        self.prices: list = []
        self.history = DemandHistory()
        self.meter = MeterReading()
        self.fail_on: set[str] = set()

        # Call tracking for integration tests
        self.calls: dict[str, list] = {"apply_battery_mode": []}

    def _check(self, name):
        if name in self.fail_on:
            raise RuntimeError(f"{name} unavailable")

    def get_price_data(self):
        """Get the raw price series."""
        self._check("get_price_data")
        return self.prices

    def get_battery_soc(self):
        """Get the current battery state of charge in percent."""
        self._check("get_battery_soc")
        return self.settings["battery_soc"]

    def get_grid_power(self):
        """Get grid power in W (negative = export)."""
        return self.settings["grid_power"]

    def get_solar_power(self):
        """Get solar production power in W."""
        return self.settings["solar_power"]

    def get_battery_power(self):
        """Get battery power in W (positive = charging)."""
        return self.settings["battery_power"]

    def get_meter_reading(self):
        """Get cumulative meter counters."""
        return self.meter

    def get_demand_history(self):
        """Get per-interval-of-day power samples."""
        return self.history

    def apply_battery_mode(self, decision):
        """Record the applied mode."""
        self._check("apply_battery_mode")
        self.calls["apply_battery_mode"].append(decision.mode)

    @property
    def applied_modes(self) -> list[BatteryMode]:
        return self.calls["apply_battery_mode"]


@pytest.fixture
def horizon_factory():
    """Build enriched horizons: ``horizon_factory(start, prices)``."""
    return build_horizon


@pytest.fixture
def battery_state():
    """Half-full default battery (9.9 kWh, 6 kW, 7-85 %, 10 % loss)."""
    return BatteryState(
        current_soc=0.5,
        capacity_kwh=9.9,
        charge_power_kw=6.0,
        target_soc=0.85,
        min_soc=0.07,
        efficiency_loss=0.1,
    )


@pytest.fixture
def empty_battery_state():
    """Battery at its minimum SoC."""
    return BatteryState(
        current_soc=0.07,
        capacity_kwh=9.9,
        charge_power_kw=6.0,
        target_soc=0.85,
        min_soc=0.07,
        efficiency_loss=0.1,
    )


@pytest.fixture
def evening_peak_history():
    """2 kW house load all day, no solar."""
    return DemandHistory(
        production={slot: [0.0, 0.0] for slot in range(96)},
        consumption={slot: [2000.0, 2000.0] for slot in range(96)},
    )


@pytest.fixture
def mock_controller():
    """Provide a fresh mock device controller."""
    return MockDeviceController()
