# core/battery_scheduler/models.py
"""
Data models for the battery scheduler.

This module contains dataclasses representing the structures passed between
the planner, the cost ledger and the decision engine. Every type that a caller
may need to persist between process restarts (ledger lots, plans, the
kickstart timer) offers ``to_dict``/``from_dict`` helpers with plain JSON
compatible values.

"""

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any

from .time_utils import ensure_aware, parse_timestamp

logger = logging.getLogger(__name__)

__all__ = [
    "BatteryMode",
    "BatteryState",
    "BlendedCost",
    "ChargeLot",
    "ChargePart",
    "ChargeParts",
    "ChargeSplit",
    "Decision",
    "DemandHistory",
    "DischargeEvent",
    "EnergyLot",
    "KickstartTimer",
    "MeterReading",
    "Plan",
    "PlannedCharge",
    "PlannedDischarge",
    "PriceInterval",
    "SingleSourceCharge",
    "Telemetry",
    "lot_from_dict",
    "normalize_charge_source",
    "plan_entry_key",
]


def finite_or(value: Any, default: float | None = 0.0) -> float | None:
    """Return value as float if it is a finite number, else default."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if not math.isfinite(value):
        return default
    return float(value)


def non_negative(value: Any) -> float:
    """Clamp telemetry glitches (None, NaN, negatives) to zero."""
    return max(0.0, finite_or(value, 0.0))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if isinstance(value, datetime) else None


class BatteryMode(Enum):
    """Inverter operating modes, decided once per control tick."""

    CHARGE = "CHARGE"  # Charge from grid active
    NORMAL = "NORMAL"  # Solar first, then battery, then grid
    CONSTANT = "CONSTANT"  # Block battery discharge, solar excess still charges
    IDLE = "IDLE"  # No actionable interval, nothing is sent to the device


@dataclass
class PriceInterval:
    """One fixed-length price slot."""

    starts_at: datetime
    price: float
    index: int | None = None
    interval_of_day: int | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "PriceInterval | None":
        """Build from a provider entry such as ``{"startsAt": ..., "total": ...}``.

        Returns None for entries without a usable timestamp or price.
        """
        if not isinstance(data, dict):
            return None
        starts_at = parse_timestamp(data.get("starts_at", data.get("startsAt")))
        price = finite_or(data.get("price", data.get("total")), None)
        if starts_at is None or price is None:
            return None
        return cls(
            starts_at=ensure_aware(starts_at),
            price=price,
            index=data.get("index"),
            interval_of_day=data.get("interval_of_day", data.get("intervalOfDay")),
        )

    @classmethod
    def from_series(cls, series: Any) -> list["PriceInterval"]:
        """Convert a raw price series, dropping malformed entries and duplicates.

        Naive start times are read as local time so that mixed feeds still sort.
        """
        if not isinstance(series, (list, tuple)):
            return []
        seen: set[datetime] = set()
        intervals = []
        for entry in series:
            if isinstance(entry, cls):
                interval = entry
                if not isinstance(interval.starts_at, datetime):
                    continue
                if interval.starts_at.tzinfo is None:
                    interval = replace(interval, starts_at=ensure_aware(interval.starts_at))
            else:
                interval = cls.from_dict(entry)
            if interval is None or interval.starts_at in seen:
                continue
            seen.add(interval.starts_at)
            intervals.append(interval)
        return sorted(intervals, key=lambda p: p.starts_at)


@dataclass(frozen=True)
class ChargeLot:
    """Energy that entered the battery, split by source."""

    timestamp: datetime | None
    total_kwh: float
    solar_kwh: float
    grid_kwh: float
    grid_price: float
    soc: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "charge",
            "timestamp": _iso(self.timestamp),
            "totalKWh": self.total_kwh,
            "solarKWh": self.solar_kwh,
            "gridKWh": self.grid_kwh,
            "gridPrice": self.grid_price,
            "soc": self.soc,
        }


@dataclass(frozen=True)
class DischargeEvent:
    """Energy that left the battery."""

    timestamp: datetime | None
    discharged_kwh: float
    grid_price: float
    avg_battery_price_at_discharge: float
    soc: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "discharge",
            "timestamp": _iso(self.timestamp),
            "dischargedKWh": self.discharged_kwh,
            "gridPrice": self.grid_price,
            "avgBatteryPrice": self.avg_battery_price_at_discharge,
            "soc": self.soc,
        }


EnergyLot = ChargeLot | DischargeEvent


def lot_from_dict(data: dict) -> EnergyLot | None:
    """Rebuild a persisted ledger entry; unknown entries yield None."""
    if not isinstance(data, dict):
        return None
    timestamp = parse_timestamp(data.get("timestamp"))
    if data.get("type") == "charge":
        solar = non_negative(data.get("solarKWh"))
        grid = non_negative(data.get("gridKWh"))
        return ChargeLot(
            timestamp=timestamp,
            total_kwh=solar + grid,
            solar_kwh=solar,
            grid_kwh=grid,
            grid_price=non_negative(data.get("gridPrice")),
            soc=finite_or(data.get("soc"), 0.0),
        )
    if data.get("type") == "discharge":
        return DischargeEvent(
            timestamp=timestamp,
            # Older entries store discharges as negative totals
            discharged_kwh=abs(
                finite_or(data.get("dischargedKWh", data.get("totalKWh")), 0.0)
            ),
            grid_price=non_negative(data.get("gridPrice")),
            avg_battery_price_at_discharge=non_negative(data.get("avgBatteryPrice")),
            soc=finite_or(data.get("soc"), 0.0),
        )
    return None


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass
class BlendedCost:
    """Cost basis and composition of the energy currently stored."""

    total_kwh: float
    avg_price_per_kwh: float
    solar_kwh: float
    grid_kwh: float
    total_grid_cost: float
    is_estimated: bool = False
    tracked_kwh: float | None = None
    untracked_kwh: float = 0.0

    @property
    def solar_fraction(self) -> float:
        return self.solar_kwh / self.total_kwh if self.total_kwh > 0 else 0.0

    @property
    def grid_fraction(self) -> float:
        return self.grid_kwh / self.total_kwh if self.total_kwh > 0 else 0.0

    @property
    def solar_percent(self) -> int:
        """Display value, rounded half-up to a whole percent."""
        return _round_half_up(self.solar_fraction * 100)

    @property
    def grid_percent(self) -> int:
        """Display value, rounded half-up to a whole percent."""
        return _round_half_up(self.grid_fraction * 100)

    @property
    def grid_only_avg_price(self) -> float:
        """Average price of the grid share alone."""
        return self.total_grid_cost / self.grid_kwh if self.grid_kwh > 0 else 0.0


@dataclass
class ChargeSplit:
    """Explicit grid/solar split of a planned charge."""

    grid_kwh: float | None = None
    solar_kwh: float | None = None


@dataclass
class ChargePart:
    source: str  # "grid" or "solar"
    energy_kwh: float
    price: float = 0.0

    @property
    def cost(self) -> float:
        return self.energy_kwh * self.price


@dataclass
class ChargeParts:
    """Itemized list of charge sources."""

    parts: list[ChargePart] = field(default_factory=list)


@dataclass
class SingleSourceCharge:
    """Flattened single-source description."""

    source: str
    energy_kwh: float


ChargeSource = ChargeSplit | ChargeParts | SingleSourceCharge | None


def normalize_charge_source(
    source: ChargeSource,
) -> tuple[float | None, float | None]:
    """Reduce any charge source shape to ``(grid_kwh, solar_kwh)``.

    A value is None when the shape says nothing about that source. Both None
    is the legacy shorthand for a grid charge.
    """
    if isinstance(source, ChargeSplit):
        return finite_or(source.grid_kwh, None), finite_or(source.solar_kwh, None)

    if isinstance(source, ChargeParts):
        grid = sum(
            finite_or(p.energy_kwh, 0.0) for p in source.parts if p.source == "grid"
        )
        solar = sum(
            finite_or(p.energy_kwh, 0.0) for p in source.parts if p.source == "solar"
        )
        return grid, solar

    if isinstance(source, SingleSourceCharge):
        energy = finite_or(source.energy_kwh, None)
        if source.source == "grid":
            return energy, None
        if source.source == "solar":
            return None, energy

    return None, None


def _charge_source_from_dict(data: dict) -> ChargeSource:
    if "plannedGridEnergyKWh" in data or "plannedSolarEnergyKWh" in data:
        return ChargeSplit(
            grid_kwh=finite_or(data.get("plannedGridEnergyKWh"), None),
            solar_kwh=finite_or(data.get("plannedSolarEnergyKWh"), None),
        )
    if isinstance(data.get("plannedChargeParts"), list):
        return ChargeParts(
            [
                ChargePart(
                    source=part.get("source", ""),
                    energy_kwh=finite_or(part.get("energyKWh"), 0.0),
                    price=finite_or(part.get("priceEurPerKWh"), 0.0),
                )
                for part in data["plannedChargeParts"]
                if isinstance(part, dict)
            ]
        )
    if data.get("plannedEnergySource") in ("grid", "solar"):
        return SingleSourceCharge(
            source=data["plannedEnergySource"],
            energy_kwh=finite_or(data.get("plannedEnergyKWh"), 0.0),
        )
    return None


def _slot_fields(data: dict) -> tuple[datetime | None, int | None]:
    """Start time and horizon index of a persisted plan entry."""
    starts_at = parse_timestamp(data.get("startsAt", data.get("starts_at")))
    index = data.get("index")
    if isinstance(index, bool) or not isinstance(index, int) or index < 0:
        index = None
    return (ensure_aware(starts_at) if starts_at is not None else None), index


def plan_entry_key(entry) -> tuple:
    """Order timed plan entries by start, then untimed ones by horizon index."""
    if entry.starts_at is not None:
        return (0, ensure_aware(entry.starts_at).timestamp())
    return (1, entry.index if entry.index is not None else 0)


def _slot_id(entry):
    if entry.starts_at is not None:
        return ensure_aware(entry.starts_at)
    return ("index", entry.index)


def _matches(entry, starts_at: datetime | None, index: int | None) -> bool:
    if entry.starts_at is not None:
        return isinstance(starts_at, datetime) and ensure_aware(
            entry.starts_at
        ) == ensure_aware(starts_at)
    return index is not None and entry.index == index


@dataclass
class PlannedCharge:
    """A charge slot of the plan, keyed by the interval start.

    Entries restored without a start time are matched by horizon ``index``.
    """

    starts_at: datetime | None
    price: float = 0.0
    index: int | None = None
    interval_of_day: int | None = None
    source: ChargeSource = None

    @property
    def planned_grid_energy_kwh(self) -> float | None:
        return normalize_charge_source(self.source)[0]

    @property
    def planned_solar_energy_kwh(self) -> float | None:
        return normalize_charge_source(self.source)[1]

    @property
    def planned_energy_kwh(self) -> float:
        grid, solar = normalize_charge_source(self.source)
        return (grid or 0.0) + (solar or 0.0)

    def to_dict(self) -> dict[str, Any]:
        grid, solar = normalize_charge_source(self.source)
        data: dict[str, Any] = {
            "startsAt": _iso(self.starts_at),
            "price": self.price,
            "index": self.index,
            "intervalOfDay": self.interval_of_day,
        }
        if grid is not None or solar is not None:
            data["plannedGridEnergyKWh"] = grid
            data["plannedSolarEnergyKWh"] = solar
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "PlannedCharge | None":
        if not isinstance(data, dict):
            return None
        starts_at, index = _slot_fields(data)
        if starts_at is None and index is None:
            return None
        return cls(
            starts_at=starts_at,
            price=finite_or(data.get("price", data.get("total")), 0.0),
            index=index,
            interval_of_day=data.get("intervalOfDay"),
            source=_charge_source_from_dict(data),
        )


@dataclass
class PlannedDischarge:
    """A discharge slot of the plan."""

    starts_at: datetime | None
    price: float = 0.0
    index: int | None = None
    interval_of_day: int | None = None
    energy_kwh: float = 0.0
    energy_from_existing_kwh: float = 0.0
    energy_from_new_kwh: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "startsAt": _iso(self.starts_at),
            "price": self.price,
            "index": self.index,
            "intervalOfDay": self.interval_of_day,
            "demandKWh": self.energy_kwh,
            "demandKWhFromExisting": self.energy_from_existing_kwh,
            "demandKWhFromNew": self.energy_from_new_kwh,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PlannedDischarge | None":
        if not isinstance(data, dict):
            return None
        starts_at, index = _slot_fields(data)
        if starts_at is None and index is None:
            return None
        return cls(
            starts_at=starts_at,
            price=finite_or(data.get("price", data.get("total")), 0.0),
            index=index,
            interval_of_day=data.get("intervalOfDay"),
            energy_kwh=finite_or(data.get("demandKWh"), 0.0),
            energy_from_existing_kwh=finite_or(data.get("demandKWhFromExisting"), 0.0),
            energy_from_new_kwh=finite_or(data.get("demandKWhFromNew"), 0.0),
        )


@dataclass
class Plan:
    """Charge and discharge slots for the price horizon.

    A start time appears in at most one of the two lists; when both were
    produced the charge slot wins. Entries without a start time are ordered
    after the timed ones and matched by horizon index instead.
    """

    charge_intervals: list[PlannedCharge] = field(default_factory=list)
    discharge_intervals: list[PlannedDischarge] = field(default_factory=list)
    total_charge_kwh: float = 0.0
    total_discharge_kwh: float = 0.0
    estimated_savings: float = 0.0
    strategy: str = "none"  # "lp", "heuristic" or "none"
    avg_price: float = 0.0
    baseline_cost: float = 0.0

    def __post_init__(self):
        self.charge_intervals = sorted(self.charge_intervals, key=plan_entry_key)
        charge_slots = {_slot_id(c) for c in self.charge_intervals}
        self.discharge_intervals = sorted(
            (d for d in self.discharge_intervals if _slot_id(d) not in charge_slots),
            key=plan_entry_key,
        )

    @classmethod
    def empty(cls, avg_price: float = 0.0) -> "Plan":
        return cls(avg_price=avg_price)

    @property
    def is_empty(self) -> bool:
        return not self.charge_intervals and not self.discharge_intervals

    def charge_for(
        self, starts_at: datetime, index: int | None = None
    ) -> PlannedCharge | None:
        return next(
            (c for c in self.charge_intervals if _matches(c, starts_at, index)), None
        )

    def discharge_for(
        self, starts_at: datetime, index: int | None = None
    ) -> PlannedDischarge | None:
        return next(
            (d for d in self.discharge_intervals if _matches(d, starts_at, index)),
            None,
        )

    def next_charge(self, now: datetime) -> PlannedCharge | None:
        """Next upcoming charge slot (not the first historical one)."""
        now = ensure_aware(now)
        return next(
            (
                c
                for c in self.charge_intervals
                if c.starts_at is not None and ensure_aware(c.starts_at) >= now
            ),
            None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "chargeIntervals": [c.to_dict() for c in self.charge_intervals],
            "dischargeIntervals": [d.to_dict() for d in self.discharge_intervals],
            "totalChargeKWh": self.total_charge_kwh,
            "totalDischargeKWh": self.total_discharge_kwh,
            "estimatedSavings": self.estimated_savings,
            "strategy": self.strategy,
            "avgPrice": self.avg_price,
            "baselineCost": self.baseline_cost,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Plan | None":
        if not isinstance(data, dict):
            return None
        charges = [PlannedCharge.from_dict(c) for c in data.get("chargeIntervals") or []]
        discharges = [
            PlannedDischarge.from_dict(d) for d in data.get("dischargeIntervals") or []
        ]
        return cls(
            charge_intervals=[c for c in charges if c is not None],
            discharge_intervals=[d for d in discharges if d is not None],
            total_charge_kwh=finite_or(data.get("totalChargeKWh"), 0.0),
            total_discharge_kwh=finite_or(data.get("totalDischargeKWh"), 0.0),
            estimated_savings=finite_or(data.get("estimatedSavings"), 0.0),
            strategy=data.get("strategy", "none"),
            avg_price=finite_or(data.get("avgPrice"), 0.0),
            baseline_cost=finite_or(data.get("baselineCost"), 0.0),
        )


@dataclass
class BatteryState:
    """Snapshot of the battery for one planning cycle. SoC values are fractions."""

    current_soc: float
    capacity_kwh: float
    charge_power_kw: float
    target_soc: float
    min_soc: float
    efficiency_loss: float

    @classmethod
    def from_settings(cls, settings, current_soc_percent: float | None) -> "BatteryState":
        """Build from BatterySettings and a live SoC reading in percent."""
        soc = finite_or(current_soc_percent, 0.0)
        return cls(
            current_soc=max(0.0, min(100.0, soc)) / 100.0,
            capacity_kwh=settings.total_capacity,
            charge_power_kw=settings.max_charge_power_kw,
            target_soc=settings.target_soc / 100.0,
            min_soc=settings.min_soc / 100.0,
            efficiency_loss=settings.efficiency_loss_fraction,
        )

    def is_valid(self) -> bool:
        return (
            self.capacity_kwh > 0
            and self.charge_power_kw > 0
            and 0 <= self.current_soc <= 1
            and 0 <= self.target_soc <= 1
            and 0 <= self.min_soc <= 1
            and 0 <= self.efficiency_loss < 1
        )

    @property
    def current_energy_kwh(self) -> float:
        return self.current_soc * self.capacity_kwh

    @property
    def max_energy_kwh(self) -> float:
        # A battery above target must not make the SoC bounds infeasible
        return max(self.target_soc * self.capacity_kwh, self.current_energy_kwh)

    @property
    def min_energy_kwh(self) -> float:
        configured = self.min_soc * self.capacity_kwh
        return min(configured, self.target_soc * self.capacity_kwh, self.current_energy_kwh)

    @property
    def headroom_kwh(self) -> float:
        return max(0.0, self.target_soc * self.capacity_kwh - self.current_energy_kwh)

    def energy_per_interval(self, interval_hours: float) -> float:
        return self.charge_power_kw * interval_hours


@dataclass
class Telemetry:
    """Live readings; None means the device did not deliver a value."""

    grid_power_w: float | None = None  # negative = export
    solar_power_w: float | None = None
    battery_power_w: float | None = None  # positive = charging
    soc_percent: float | None = None


@dataclass
class MeterReading:
    """Cumulative energy counters (kWh) sampled from the devices."""

    solar_kwh: float = 0.0
    grid_imported_kwh: float = 0.0
    grid_exported_kwh: float = 0.0
    battery_charged_kwh: float = 0.0
    battery_discharged_kwh: float = 0.0
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "solar": self.solar_kwh,
            "gridImported": self.grid_imported_kwh,
            "gridExported": self.grid_exported_kwh,
            "battery": self.battery_charged_kwh,
            "batteryDischarged": self.battery_discharged_kwh,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MeterReading | None":
        if not isinstance(data, dict):
            return None
        return cls(
            solar_kwh=finite_or(data.get("solar"), 0.0),
            grid_imported_kwh=finite_or(data.get("gridImported"), 0.0),
            grid_exported_kwh=finite_or(data.get("gridExported"), 0.0),
            battery_charged_kwh=finite_or(data.get("battery"), 0.0),
            battery_discharged_kwh=finite_or(data.get("batteryDischarged"), 0.0),
            timestamp=parse_timestamp(data.get("timestamp")),
        )


@dataclass
class DemandHistory:
    """Power samples (W) per interval of day, bounded to the last N days by the caller."""

    production: dict[int, list[float]] = field(default_factory=dict)
    consumption: dict[int, list[float]] = field(default_factory=dict)
    battery: dict[int, list[float]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.production or self.consumption or self.battery)

    def add_samples(
        self,
        slot: int,
        production: float | None,
        consumption: float | None,
        battery: float | None,
        max_samples: int,
    ) -> None:
        """Append one sample per signal at a slot, keeping the newest max_samples.

        Missing or non-finite values are skipped for that signal only.
        """
        for samples, value in (
            (self.production, production),
            (self.consumption, consumption),
            (self.battery, battery),
        ):
            value = finite_or(value, None)
            if value is None:
                continue
            values = samples.setdefault(slot, [])
            values.append(value)
            del values[:-max_samples]

    def to_dict(self) -> dict[str, Any]:
        return {
            "production": {str(k): list(v) for k, v in self.production.items()},
            "consumption": {str(k): list(v) for k, v in self.consumption.items()},
            "battery": {str(k): list(v) for k, v in self.battery.items()},
        }

    @classmethod
    def from_dict(cls, data: Any) -> "DemandHistory":
        if not isinstance(data, dict):
            return cls()

        def _samples(raw: Any) -> dict[int, list[float]]:
            if not isinstance(raw, dict):
                return {}
            result = {}
            for key, values in raw.items():
                try:
                    slot = int(key)
                except (TypeError, ValueError):
                    continue
                if not isinstance(values, list):
                    continue
                cleaned = [finite_or(v, None) for v in values]
                result[slot] = [v for v in cleaned if v is not None]
            return result

        return cls(
            production=_samples(data.get("production")),
            consumption=_samples(data.get("consumption")),
            battery=_samples(data.get("battery")),
        )


@dataclass
class Decision:
    """Operating mode for the current control tick."""

    mode: BatteryMode
    interval_index: int = -1
    reason: str = ""
    kickstart: bool = False


@dataclass(frozen=True)
class KickstartTimer:
    """Once-per-day PV kickstart state, owned and persisted by the caller."""

    active_for_date: date | None = None
    active_until: datetime | None = None

    def used_on(self, day: date) -> bool:
        return self.active_for_date == day

    def is_active(self, now: datetime, day: date) -> bool:
        return (
            self.used_on(day)
            and isinstance(self.active_until, datetime)
            and now < self.active_until
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "activeForDate": self.active_for_date.isoformat()
            if self.active_for_date
            else None,
            "activeUntil": _iso(self.active_until),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "KickstartTimer":
        if not isinstance(data, dict):
            return cls()
        try:
            day = date.fromisoformat(data["activeForDate"]) if data.get("activeForDate") else None
        except (TypeError, ValueError):
            day = None
        return cls(active_for_date=day, active_until=parse_timestamp(data.get("activeUntil")))
