"""FIFO cost ledger for energy stored in the battery.

The ledger is a chronological list of ``ChargeLot`` and ``DischargeEvent``
entries owned by the caller. Every function here is pure: it takes a ledger
snapshot and returns new values without mutating the input.

Discharges always drain the oldest surviving charge lot first. Within a lot
the solar and grid shares shrink proportionally, so a lot keeps its original
composition and price until it is fully consumed.

Example:
    >>> log = [create_charge_lot(4.0, solar_kwh=1.5, grid_price=0.20)]
    >>> cost = blended_cost(log)
    >>> cost.avg_price_per_kwh, cost.solar_percent, cost.grid_percent
    (0.125, 38, 63)
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime

from .models import (
    BlendedCost,
    ChargeLot,
    DischargeEvent,
    EnergyLot,
    Plan,
    PriceInterval,
    non_negative,
)
from .settings import MAX_LEDGER_ENTRIES
from .time_utils import INTERVALS_PER_DAY

logger = logging.getLogger(__name__)

# Below this amount the battery is considered empty
LEDGER_EPSILON_KWH = 0.01

# Split assumed for stored energy the ledger knows nothing about
UNTRACKED_GRID_SHARE = 0.7
UNTRACKED_SOLAR_SHARE = 0.3
FALLBACK_ENERGY_PRICE = 0.20


@dataclass
class RemainingLot:
    """Part of a charge lot that has not been discharged yet."""

    lot: ChargeLot
    remaining_kwh: float

    @property
    def fraction(self) -> float:
        return self.remaining_kwh / self.lot.total_kwh if self.lot.total_kwh > 0 else 0.0

    @property
    def solar_kwh(self) -> float:
        return self.lot.solar_kwh * self.fraction

    @property
    def grid_kwh(self) -> float:
        return self.lot.grid_kwh * self.fraction

    @property
    def grid_cost(self) -> float:
        return self.grid_kwh * self.lot.grid_price


@dataclass
class DischargeProfit:
    profit: float
    profit_percent: float
    worth_it: bool
    cost: float = 0.0
    revenue: float = 0.0
    reason: str = ""


def create_charge_lot(
    charged_kwh: float,
    solar_kwh: float = 0.0,
    grid_price: float = 0.0,
    soc: float = 0.0,
    timestamp: datetime | None = None,
) -> ChargeLot:
    """Create a ledger entry for energy that entered the battery.

    Solar energy is free; the grid share is priced at ``grid_price``.
    Non-finite or negative inputs are clamped to zero so that a meter glitch
    cannot corrupt a multi-day ledger.
    """
    charged = non_negative(charged_kwh)
    solar = min(charged, non_negative(solar_kwh))
    grid = max(0.0, charged - solar)
    return ChargeLot(
        timestamp=timestamp,
        total_kwh=solar + grid,
        solar_kwh=solar,
        grid_kwh=grid,
        grid_price=non_negative(grid_price),
        soc=non_negative(soc),
    )


def create_discharge_event(
    discharged_kwh: float,
    grid_price: float = 0.0,
    avg_battery_price_at_discharge: float = 0.0,
    soc: float = 0.0,
    timestamp: datetime | None = None,
) -> DischargeEvent:
    """Create a ledger entry for energy that left the battery."""
    return DischargeEvent(
        timestamp=timestamp,
        discharged_kwh=non_negative(discharged_kwh),
        grid_price=non_negative(grid_price),
        avg_battery_price_at_discharge=non_negative(avg_battery_price_at_discharge),
        soc=non_negative(soc),
    )


record_charge_event = create_charge_lot
record_discharge_event = create_discharge_event


def fifo_remaining(log: list[EnergyLot]) -> list[RemainingLot]:
    """Walk the ledger and return the surviving part of every charge lot, oldest first.

    A discharge larger than all stored energy empties the battery; the excess
    is ignored.
    """
    if not isinstance(log, (list, tuple)):
        return []

    queue: deque[RemainingLot] = deque()
    for entry in log:
        if isinstance(entry, ChargeLot):
            if entry.total_kwh > 0:
                queue.append(RemainingLot(entry, entry.total_kwh))
        elif isinstance(entry, DischargeEvent):
            to_consume = entry.discharged_kwh
            while to_consume > 0 and queue:
                oldest = queue[0]
                if oldest.remaining_kwh <= to_consume:
                    to_consume -= oldest.remaining_kwh
                    queue.popleft()
                else:
                    oldest.remaining_kwh -= to_consume
                    to_consume = 0.0

    return list(queue)


def blended_cost(log: list[EnergyLot]) -> BlendedCost | None:
    """Cost basis and solar/grid composition of the energy still in the battery.

    Returns:
        BlendedCost, or None if the ledger is not a list or holds no
        meaningful energy after FIFO consumption
    """
    remaining = fifo_remaining(log)
    total_kwh = sum(r.remaining_kwh for r in remaining)
    if total_kwh <= LEDGER_EPSILON_KWH:
        return None

    solar_kwh = sum(r.solar_kwh for r in remaining)
    grid_kwh = sum(r.grid_kwh for r in remaining)
    total_grid_cost = sum(r.grid_cost for r in remaining)

    return BlendedCost(
        total_kwh=total_kwh,
        avg_price_per_kwh=total_grid_cost / total_kwh,
        solar_kwh=solar_kwh,
        grid_kwh=grid_kwh,
        total_grid_cost=total_grid_cost,
        is_estimated=False,
        tracked_kwh=total_kwh,
    )


def should_reset(current_soc: float | None, min_soc: float, log_length: int) -> bool:
    """True when the battery is at/below minimum but the ledger still holds entries.

    ``current_soc`` and ``min_soc`` must use the same unit. An unknown SoC
    never triggers a reset.
    """
    if current_soc is None:
        return False
    return current_soc <= min_soc and log_length > 0


def trim(log: list[EnergyLot], max_entries: int = MAX_LEDGER_ENTRIES) -> list[EnergyLot]:
    """Keep only the newest ``max_entries`` entries."""
    if not isinstance(log, (list, tuple)) or max_entries <= 0:
        return []
    if len(log) <= max_entries:
        return list(log)
    return list(log[-max_entries:])


def estimate_untracked_price(
    plan: Plan | None, intervals: list[PriceInterval] | None
) -> float:
    """Best guess for the price of stored energy the ledger does not cover.

    Uses the average planned charge price, then the average of the next day of
    prices, then a fixed fallback.
    """
    if plan is not None and plan.charge_intervals:
        return sum(c.price for c in plan.charge_intervals) / len(plan.charge_intervals)
    if intervals:
        recent = intervals[:INTERVALS_PER_DAY]
        return sum(p.price for p in recent) / len(recent)
    return FALLBACK_ENERGY_PRICE


def reconcile_cost_basis(
    tracked: BlendedCost | None, stored_kwh: float, estimate_price: float
) -> BlendedCost | None:
    """Blend the ledger's cost basis with stored energy it does not know about.

    After a restart or a ledger reset the battery may hold more energy than
    the ledger tracks. The unknown part is assumed to be mostly grid energy
    bought at ``estimate_price``.
    """
    stored = non_negative(stored_kwh)
    if stored < LEDGER_EPSILON_KWH:
        return None

    tracked_kwh = tracked.total_kwh if tracked is not None else 0.0
    untracked_kwh = max(0.0, stored - tracked_kwh)

    if untracked_kwh < LEDGER_EPSILON_KWH and tracked is not None:
        return tracked

    untracked_grid = untracked_kwh * UNTRACKED_GRID_SHARE
    untracked_solar = untracked_kwh * UNTRACKED_SOLAR_SHARE
    untracked_cost = untracked_grid * estimate_price

    solar_kwh = (tracked.solar_kwh if tracked else 0.0) + untracked_solar
    grid_kwh = (tracked.grid_kwh if tracked else 0.0) + untracked_grid
    total_grid_cost = (tracked.total_grid_cost if tracked else 0.0) + untracked_cost
    total_kwh = tracked_kwh + untracked_kwh

    logger.debug(
        f"Cost basis: {tracked_kwh:.2f} kWh tracked, {untracked_kwh:.2f} kWh "
        f"estimated @ {estimate_price:.4f}/kWh"
    )

    return BlendedCost(
        total_kwh=total_kwh,
        avg_price_per_kwh=total_grid_cost / total_kwh,
        solar_kwh=solar_kwh,
        grid_kwh=grid_kwh,
        total_grid_cost=total_grid_cost,
        is_estimated=True,
        tracked_kwh=tracked_kwh,
        untracked_kwh=untracked_kwh,
    )


def calculate_discharge_profit(
    discharged_kwh: float, avg_battery_cost: float, grid_price: float
) -> DischargeProfit:
    """Profit of serving load from the battery instead of buying from the grid."""
    if discharged_kwh <= 0 or avg_battery_cost < 0 or grid_price < 0:
        return DischargeProfit(0.0, 0.0, False, reason="Invalid parameters")

    cost = discharged_kwh * avg_battery_cost
    revenue = discharged_kwh * grid_price
    profit = revenue - cost
    profit_percent = profit / cost * 100 if avg_battery_cost > 0 else 0.0

    return DischargeProfit(
        profit=profit,
        profit_percent=profit_percent,
        worth_it=profit > 0,
        cost=cost,
        revenue=revenue,
        reason="Profitable discharge" if profit > 0 else "Unprofitable discharge",
    )
