"""
Orchestration of the battery scheduler core.

BatterySchedulerManager owns the state that has to survive between control
ticks (price horizon, plan, cost ledger, kickstart timer, last issued mode,
last meter reading, recorded demand samples) and talks to devices only through
a DeviceController.

Each operation has its own non-blocking guard: a call that overlaps a running
call of the same operation is skipped. Different operations wait for each
other on a shared state lock for at most ``lock_timeout_s`` seconds, so a
control tick that coincides with energy tracking is delayed, not dropped.

"""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any, Protocol

from .battery_tracker import track_battery_energy
from .cost_ledger import (
    blended_cost,
    estimate_untracked_price,
    reconcile_cost_basis,
)
from .decision_engine import decide, has_mode_changed
from .exceptions import PriceDataUnavailableError
from .models import (
    BatteryMode,
    BatteryState,
    BlendedCost,
    Decision,
    DemandHistory,
    EnergyLot,
    KickstartTimer,
    MeterReading,
    Plan,
    PriceInterval,
    Telemetry,
    finite_or,
    lot_from_dict,
)
from .optimizer import compute_plan, log_plan
from .settings import BatterySettings, DecisionSettings, LedgerSettings, OptimizerSettings
from .time_utils import (
    INTERVAL_MINUTES,
    TIMEZONE,
    enrich_price_data,
    filter_current_and_future_intervals,
    get_interval_of_day,
    get_price_at_time,
)

logger = logging.getLogger(__name__)

# Longest wait for another operation to release the shared state
LOCK_TIMEOUT_S = 30.0

OPERATIONS = ("plan update", "energy tracking", "sample recording", "control tick")


class DeviceController(Protocol):
    """Boundary to prices and devices. Any getter may return None."""

    def get_price_data(self) -> list[Any] | None: ...

    def get_battery_soc(self) -> float | None: ...

    def get_grid_power(self) -> float | None: ...

    def get_solar_power(self) -> float | None: ...

    def get_battery_power(self) -> float | None: ...

    def get_meter_reading(self) -> MeterReading | None: ...

    def get_demand_history(self) -> DemandHistory | None: ...

    def apply_battery_mode(self, decision: Decision) -> None: ...


class BatterySchedulerManager:
    """Drives planning, ledger tracking and mode decisions for one battery."""

    def __init__(
        self,
        controller: DeviceController | None = None,
        battery_settings: BatterySettings | None = None,
        optimizer_settings: OptimizerSettings | None = None,
        decision_settings: DecisionSettings | None = None,
        ledger_settings: LedgerSettings | None = None,
        interval_minutes: int = INTERVAL_MINUTES,
        lock_timeout_s: float = LOCK_TIMEOUT_S,
    ):
        self.battery_settings = battery_settings or BatterySettings()
        self.optimizer_settings = optimizer_settings or OptimizerSettings()
        self.decision_settings = decision_settings or DecisionSettings(
            min_soc=self.battery_settings.min_soc
        )
        self.ledger_settings = ledger_settings or LedgerSettings()
        self.interval_minutes = interval_minutes

        self._controller = controller
        self.lock_timeout_s = lock_timeout_s
        self._guards = {op: threading.Lock() for op in OPERATIONS}
        self._state_lock = threading.Lock()

        self.price_horizon: list[PriceInterval] = []
        self.plan: Plan | None = None
        self.ledger: list[EnergyLot] = []
        self.kickstart = KickstartTimer()
        self.last_mode: BatteryMode | None = None
        self.last_reading: MeterReading | None = None
        self.last_decision: Decision | None = None
        self.history = DemandHistory()

    @property
    def controller(self) -> DeviceController:
        """Get the device controller."""
        if self._controller is None:
            raise RuntimeError("Controller not initialized")
        return self._controller

    @contextmanager
    def _run_guard(self, operation: str) -> Iterator[bool]:
        guard = self._guards[operation]
        if not guard.acquire(blocking=False):
            logger.warning(f"Skipping {operation}: previous run still in progress")
            yield False
            return
        try:
            if not self._state_lock.acquire(timeout=self.lock_timeout_s):
                logger.warning(
                    f"Skipping {operation}: state still busy after {self.lock_timeout_s}s"
                )
                yield False
                return
            try:
                yield True
            finally:
                self._state_lock.release()
        finally:
            guard.release()

    def _now(self, now: datetime | None) -> datetime:
        return now if now is not None else datetime.now(tz=TIMEZONE)

    def update_prices(self) -> bool:
        """Fetch the price series from the controller."""
        try:
            raw = self.controller.get_price_data()
            intervals = PriceInterval.from_series(raw)
            if not intervals:
                raise PriceDataUnavailableError()
            self.price_horizon = enrich_price_data(intervals, self.interval_minutes)
            logger.info(
                f"Loaded {len(intervals)} price intervals "
                f"({intervals[0].starts_at.isoformat()} - {intervals[-1].starts_at.isoformat()})"
            )
            return True
        except PriceDataUnavailableError as e:
            logger.warning(f"Price update failed: {e}")
            return False
        except Exception as e:
            logger.error(f"Failed to update prices: {e}", exc_info=True)
            return False

    def battery_state(self) -> BatteryState | None:
        soc = self.controller.get_battery_soc()
        if soc is None:
            return None
        return BatteryState.from_settings(self.battery_settings, soc)

    def cost_basis(self) -> BlendedCost | None:
        """Cost basis of the stored energy, estimating what the ledger does not cover."""
        tracked = blended_cost(self.ledger)
        soc = self.controller.get_battery_soc()
        if soc is None:
            return tracked
        stored_kwh = max(0.0, soc) / 100.0 * self.battery_settings.total_capacity
        estimate = estimate_untracked_price(self.plan, self.price_horizon)
        return reconcile_cost_basis(tracked, stored_kwh, estimate)

    def demand_history(self) -> DemandHistory:
        """Samples for the forecast: the controller's own history if it has one."""
        external = self.controller.get_demand_history()
        if isinstance(external, DemandHistory) and not external.is_empty:
            return external
        return self.history

    def update_plan(self, now: datetime | None = None) -> bool:
        """Recompute the plan for the current and future intervals."""
        with self._run_guard("plan update") as acquired:
            if not acquired:
                return False
            try:
                now = self._now(now)
                horizon = filter_current_and_future_intervals(
                    self.price_horizon, now, self.interval_minutes
                )
                if not horizon:
                    raise PriceDataUnavailableError(start=now)

                battery = self.battery_state()
                if battery is None:
                    logger.error("Failed to get battery SOC")
                    return False

                self.plan = compute_plan(
                    horizon,
                    battery,
                    self.demand_history(),
                    cost_basis=self.cost_basis(),
                    settings=self.optimizer_settings,
                    interval_minutes=self.interval_minutes,
                )
                log_plan(self.plan)
                return True
            except PriceDataUnavailableError as e:
                logger.warning(f"Plan update aborted: {e}")
                return False
            except Exception as e:
                logger.error(f"Failed to update plan: {e}", exc_info=True)
                return False

    def track_energy(self, now: datetime | None = None) -> bool:
        """Append the energy moved since the last meter reading to the ledger."""
        with self._run_guard("energy tracking") as acquired:
            if not acquired:
                return False
            try:
                now = self._now(now)
                reading = self.controller.get_meter_reading()
                if reading is None:
                    logger.debug("No meter reading available")
                    return False
                if reading.timestamp is None:
                    reading.timestamp = now

                result = track_battery_energy(
                    self.ledger,
                    self.last_reading,
                    reading,
                    get_price_at_time(now, self.price_horizon, self.interval_minutes),
                    self.controller.get_battery_soc(),
                    self.battery_settings.min_soc,
                    self.ledger_settings,
                )
                self.ledger = result.log
                self.last_reading = result.reading
                return True
            except Exception as e:
                logger.error(f"Failed to track battery energy: {e}", exc_info=True)
                return False

    def record_samples(self, now: datetime | None = None) -> bool:
        """Store the live power readings under the current interval of day.

        House load is rebuilt from grid, solar and battery power unless
        consumption samples are configured to be raw grid power. Each slot
        keeps ``forecast_days`` samples per signal.
        """
        with self._run_guard("sample recording") as acquired:
            if not acquired:
                return False
            try:
                now = self._now(now)
                slot = get_interval_of_day(now, self.interval_minutes)
                if slot < 0:
                    return False

                grid = finite_or(self.controller.get_grid_power(), None)
                solar = finite_or(self.controller.get_solar_power(), None)
                battery = finite_or(self.controller.get_battery_power(), None)

                if grid is None:
                    consumption = None
                elif self.optimizer_settings.consumption_is_grid_net:
                    consumption = grid
                else:
                    consumption = max(0.0, grid + (solar or 0.0) - (battery or 0.0))

                self.history.add_samples(
                    slot,
                    solar,
                    consumption,
                    battery,
                    max(1, int(self.optimizer_settings.forecast_days)),
                )
                logger.debug(
                    f"Recorded samples for slot {slot}: solar {solar}, "
                    f"consumption {consumption}, battery {battery}"
                )
                return True
            except Exception as e:
                logger.error(f"Failed to record demand samples: {e}", exc_info=True)
                return False

    def execute_tick(self, now: datetime | None = None) -> Decision | None:
        """Decide the mode for now and send it to the device."""
        with self._run_guard("control tick") as acquired:
            if not acquired:
                return None
            try:
                now = self._now(now)
                telemetry = Telemetry(
                    grid_power_w=self.controller.get_grid_power(),
                    solar_power_w=self.controller.get_solar_power(),
                    battery_power_w=self.controller.get_battery_power(),
                    soc_percent=self.controller.get_battery_soc(),
                )
                decision, self.kickstart = decide(
                    now,
                    self.price_horizon,
                    self.plan,
                    telemetry,
                    self.last_mode,
                    self.kickstart,
                    self.decision_settings,
                    self.interval_minutes,
                )
                self.last_decision = decision

                logger.info(
                    f"Decision: {decision.mode.value} (interval {decision.interval_index})"
                )
                logger.info(f"Reason: {decision.reason}")

                if decision.mode == BatteryMode.IDLE:
                    logger.warning("No action to take")
                    return decision

                if has_mode_changed(decision.mode, self.last_mode):
                    logger.info(
                        f"Mode changed: {self.last_mode.value} -> {decision.mode.value}"
                    )
                self.controller.apply_battery_mode(decision)
                self.last_mode = decision.mode
                return decision
            except Exception as e:
                logger.error(f"Failed to execute control tick: {e}", exc_info=True)
                return None

    def get_settings(self) -> dict[str, Any]:
        return {
            "battery": asdict(self.battery_settings),
            "optimizer": asdict(self.optimizer_settings),
            "decision": asdict(self.decision_settings),
            "ledger": asdict(self.ledger_settings),
        }

    def update_settings(self, settings: dict[str, Any]) -> None:
        """Update settings from a nested dict, e.g. ``{"battery": {"min_soc": 10}}``."""
        try:
            if "battery" in settings:
                self.battery_settings.update(**settings["battery"])
                self.battery_settings.validate()
                self.decision_settings.min_soc = self.battery_settings.min_soc

            if "optimizer" in settings:
                self.optimizer_settings.update(**settings["optimizer"])

            if "decision" in settings:
                self.decision_settings.update(**settings["decision"])

            if "ledger" in settings:
                self.ledger_settings.update(**settings["ledger"])

            logger.info("Settings updated successfully")

        except Exception as e:
            logger.error(f"Failed to update settings: {e}")
            raise ValueError(f"Invalid settings: {e}") from e

    def export_state(self) -> dict[str, Any]:
        """Plain-dict snapshot of everything that has to survive a restart."""
        return {
            "ledger": [entry.to_dict() for entry in self.ledger],
            "plan": self.plan.to_dict() if self.plan is not None else None,
            "kickstart": self.kickstart.to_dict(),
            "lastMode": self.last_mode.value if self.last_mode is not None else None,
            "lastMeterReading": self.last_reading.to_dict()
            if self.last_reading is not None
            else None,
            "history": self.history.to_dict(),
        }

    def restore_state(self, state: dict[str, Any] | None) -> None:
        """Restore a snapshot from export_state; unknown or broken parts are dropped."""
        if not isinstance(state, dict):
            logger.warning("No stored state to restore")
            return

        entries = [lot_from_dict(e) for e in state.get("ledger") or []]
        self.ledger = [e for e in entries if e is not None]
        self.plan = Plan.from_dict(state.get("plan"))
        self.kickstart = KickstartTimer.from_dict(state.get("kickstart"))

        try:
            self.last_mode = BatteryMode(state["lastMode"]) if state.get("lastMode") else None
        except ValueError:
            logger.warning(f"Ignoring unknown stored mode: {state.get('lastMode')}")
            self.last_mode = None

        self.last_reading = MeterReading.from_dict(state.get("lastMeterReading"))
        self.history = DemandHistory.from_dict(state.get("history"))

        logger.info(
            f"Restored state: {len(self.ledger)} ledger entries, "
            f"plan {'present' if self.plan else 'missing'}, "
            f"last mode {self.last_mode.value if self.last_mode else 'none'}"
        )
