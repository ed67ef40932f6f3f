"""Per-interval demand and solar surplus forecast from historical samples."""

import logging
from dataclasses import dataclass

import numpy as np

from .models import DemandHistory, PriceInterval
from .settings import DEFAULT_LOAD_KW, OptimizerSettings
from .time_utils import INTERVAL_MINUTES, get_interval_of_day, interval_minutes_to_hours

logger = logging.getLogger(__name__)


@dataclass
class HouseSignals:
    """Forecast energy per horizon interval, in kWh."""

    import_demand_kwh: np.ndarray
    solar_surplus_kwh: np.ndarray
    load_kw: np.ndarray
    solar_kw: np.ndarray


def _mean_kw(samples: dict[int, list[float]] | None, slot: int) -> float | None:
    """Average of the finite samples at a slot in kW, or None without data."""
    if not samples or slot not in samples:
        return None
    values = np.asarray(
        [v for v in samples[slot] if isinstance(v, (int, float))], dtype=float
    )
    values = values[np.isfinite(values)]
    if values.size == 0:
        return None
    return float(values.mean()) / 1000.0


def forecast_house_signals(
    intervals: list[PriceInterval],
    history: DemandHistory | None,
    settings: OptimizerSettings | None = None,
    interval_minutes: int = INTERVAL_MINUTES,
) -> HouseSignals:
    """Forecast import demand and solar surplus for every horizon interval.

    House load and solar production are averaged over all samples recorded at
    the same interval of day. Import demand is the load not covered by solar,
    surplus is solar not consumed by the house.
    """
    settings = settings or OptimizerSettings()
    history = history or DemandHistory()
    hours = interval_minutes_to_hours(interval_minutes)
    default_load = settings.default_load_kw if settings.default_load_kw >= 0 else DEFAULT_LOAD_KW

    load_kw = np.full(len(intervals), default_load, dtype=float)
    solar_kw = np.zeros(len(intervals), dtype=float)

    for i, interval in enumerate(intervals):
        slot = interval.interval_of_day
        if slot is None:
            slot = get_interval_of_day(interval.starts_at, interval_minutes)
        if slot < 0:
            continue

        production = _mean_kw(history.production, slot)
        consumption = _mean_kw(history.consumption, slot)
        solar = max(0.0, production) if production is not None else 0.0

        if consumption is None:
            load = default_load
        elif settings.consumption_is_grid_net:
            # Grid samples are net of solar and battery; rebuild the house load
            battery = _mean_kw(history.battery, slot) or 0.0
            load = max(0.0, consumption + solar - battery)
        else:
            load = max(0.0, consumption)

        load_kw[i] = load
        solar_kw[i] = solar

    import_demand = np.maximum(0.0, load_kw - solar_kw) * hours
    solar_surplus = np.maximum(0.0, solar_kw - load_kw) * hours

    logger.debug(
        f"Forecast over {len(intervals)} intervals: "
        f"{import_demand.sum():.2f} kWh import demand, "
        f"{solar_surplus.sum():.2f} kWh solar surplus"
    )

    return HouseSignals(
        import_demand_kwh=import_demand,
        solar_surplus_kwh=solar_surplus,
        load_kw=load_kw,
        solar_kw=solar_kw,
    )
