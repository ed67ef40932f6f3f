"""Turn cumulative meter readings into cost ledger entries.

Each call compares the current meter reading with the previous one. Energy
charged into the battery becomes a charge lot whose solar share is the solar
production not exported to the grid; energy discharged becomes a discharge
event priced at the cost basis just before it.
"""

import logging
from dataclasses import dataclass, field

from .cost_ledger import (
    blended_cost,
    create_charge_lot,
    create_discharge_event,
    should_reset,
    trim,
)
from .models import EnergyLot, MeterReading, finite_or
from .settings import LedgerSettings

logger = logging.getLogger(__name__)


@dataclass
class TrackingResult:
    """Updated ledger and the reading to use as the next baseline."""

    log: list[EnergyLot]
    reading: MeterReading
    charged_kwh: float = 0.0
    discharged_kwh: float = 0.0
    solar_kwh: float = 0.0
    reset: bool = False
    initialized: bool = False
    new_entries: list[EnergyLot] = field(default_factory=list)


def _delta(current: float | None, previous: float | None) -> float:
    """Increase of a cumulative counter; counter resets and gaps give zero."""
    now = finite_or(current, None)
    before = finite_or(previous, None)
    if now is None or before is None:
        return 0.0
    return max(0.0, now - before)


def track_battery_energy(
    log: list[EnergyLot],
    previous: MeterReading | None,
    reading: MeterReading,
    grid_price: float | None,
    soc_percent: float | None,
    min_soc_percent: float,
    settings: LedgerSettings | None = None,
) -> TrackingResult:
    """Record the energy that moved through the battery since the last reading.

    Args:
        log: Current ledger
        previous: Reading from the last call, None on first run
        reading: Current meter reading
        grid_price: Price of the current interval, None if unknown
        soc_percent: Live state of charge
        min_soc_percent: Below this the battery counts as empty
        settings: Ledger retention settings

    Returns:
        TrackingResult with a new ledger list; the input is not modified
    """
    settings = settings or LedgerSettings()
    log = list(log or [])

    if should_reset(soc_percent, min_soc_percent, len(log)):
        logger.info(
            f"Battery at {soc_percent:.1f}% (<= {min_soc_percent}%) - "
            f"clearing charge log ({len(log)} entries)"
        )
        # Fresh baseline so that energy before the reset is not counted again
        return TrackingResult(log=[], reading=reading, reset=True)

    if previous is None:
        logger.info("Initializing meter readings (first run or after restart)")
        return TrackingResult(log=log, reading=reading, initialized=True)

    solar_produced = _delta(reading.solar_kwh, previous.solar_kwh)
    exported = _delta(reading.grid_exported_kwh, previous.grid_exported_kwh)
    solar_available = max(0.0, solar_produced - exported)
    charged = _delta(reading.battery_charged_kwh, previous.battery_charged_kwh)
    discharged = _delta(reading.battery_discharged_kwh, previous.battery_discharged_kwh)

    price = finite_or(grid_price, 0.0)
    soc = finite_or(soc_percent, 0.0)
    new_entries: list[EnergyLot] = []

    if charged > settings.min_tracked_kwh:
        lot = create_charge_lot(
            charged,
            solar_kwh=solar_available,
            grid_price=price,
            soc=soc,
            timestamp=reading.timestamp,
        )
        log.append(lot)
        new_entries.append(lot)
        logger.debug(
            f"Battery charged {charged:.3f} kWh "
            f"({lot.solar_kwh:.3f} solar, {lot.grid_kwh:.3f} grid @ {price:.4f})"
        )

    if discharged > settings.min_tracked_kwh:
        cost = blended_cost(log)
        event = create_discharge_event(
            discharged,
            grid_price=price,
            avg_battery_price_at_discharge=cost.avg_price_per_kwh if cost else 0.0,
            soc=soc,
            timestamp=reading.timestamp,
        )
        log.append(event)
        new_entries.append(event)
        logger.debug(f"Battery discharged {discharged:.3f} kWh @ {price:.4f}")

    if len(log) > settings.max_entries:
        log = trim(log, settings.max_entries)

    return TrackingResult(
        log=log,
        reading=reading,
        charged_kwh=charged,
        discharged_kwh=discharged,
        solar_kwh=solar_available,
        new_entries=new_entries,
    )
