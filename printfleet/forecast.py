from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Callable, Iterable

from printfleet.models import (
    Device,
    ForecastParameters,
    ForecastResult,
    ForecastSnapshot,
    SupplyKind,
    SupplyReading,
    utc_now,
)
from printfleet.protocols import Persistence

LOGGER = logging.getLogger(__name__)

MODEL_NAME = "EWMA"
MIN_DAILY_USAGE = 0.01

HEURISTIC_DAILY_USAGE = {
    SupplyKind.BLACK: 2.5,
    SupplyKind.CYAN: 1.0,
    SupplyKind.MAGENTA: 1.0,
    SupplyKind.YELLOW: 1.0,
    SupplyKind.DRUM: 0.5,
    SupplyKind.FUSER: 0.3,
}


def estimate_daily_usage(kind: SupplyKind) -> float:
    return HEURISTIC_DAILY_USAGE.get(kind, 1.0)


def confidence_multiplier(confidence_level: float) -> float:
    if confidence_level >= 0.99:
        return 2.576
    if confidence_level >= 0.95:
        return 1.96
    if confidence_level >= 0.90:
        return 1.645
    if confidence_level >= 0.80:
        return 1.282
    return 1.0


def consumption_rates(readings: list[SupplyReading]) -> list[float]:
    """Percent per day between consecutive readings, newest first, drops only."""
    rates = []
    for newer, older in zip(readings, readings[1:]):
        hours = (newer.timestamp - older.timestamp).total_seconds() / 3600
        if hours <= 0:
            continue
        drop = older.percent - newer.percent
        if drop > 0:
            rates.append(drop / (hours / 24.0))
    return rates


def ewma(values: list[float], alpha: float) -> float:
    smoothed = values[0]
    for value in values[1:]:
        smoothed = alpha * value + (1 - alpha) * smoothed
    return smoothed


def daily_usage(kind: SupplyKind, readings: list[SupplyReading], alpha: float) -> float:
    rates = consumption_rates(readings)
    if not rates:
        return estimate_daily_usage(kind)
    return max(MIN_DAILY_USAGE, ewma(rates, alpha))


def usage_variance(snapshots: Iterable[ForecastSnapshot], mean: float) -> float:
    values = [snapshot.daily_usage for snapshot in snapshots if snapshot.daily_usage is not None]
    if len(values) < 2:
        return 0.0
    return sum((value - mean) ** 2 for value in values) / (len(values) - 1)


def confidence_band(days_left: int, variance: float, confidence_level: float) -> tuple[int, int]:
    margin = math.sqrt(variance) * confidence_multiplier(confidence_level)
    return max(0, math.floor(days_left - margin)), math.ceil(days_left + margin)


class ForecastEngine:
    """Days-until-empty forecasts from historical supply readings.

    Daily usage is an EWMA over recent consumption rates with a per-kind
    fallback when no consumption is visible. Each result is written back as
    a forecast snapshot so later runs can estimate variance.

    The ``minimum_data_points`` gate counts valid supply readings in the
    lookback window, not stored forecast snapshots.
    """

    def __init__(
        self,
        persistence: Persistence,
        parameters: ForecastParameters | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.persistence = persistence
        self.parameters = parameters or ForecastParameters()
        self.clock = clock

    def forecast_supply(
        self, device_id: int, kind: SupplyKind, parameters: ForecastParameters | None = None
    ) -> ForecastResult | None:
        params = parameters or self.parameters
        try:
            return self._forecast(device_id, kind, params)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Forecast failed for device %s supply %s", device_id, kind.value)
            return None

    def _forecast(self, device_id: int, kind: SupplyKind, params: ForecastParameters) -> ForecastResult | None:
        readings = [
            reading
            for reading in self.persistence.load_historical_readings(device_id, kind)
            if reading.percent is not None
        ]
        if len(readings) < params.minimum_data_points:
            LOGGER.debug("Insufficient history for device %s supply %s (%d points)", device_id, kind.value, len(readings))
            return None

        readings.sort(key=lambda reading: reading.timestamp, reverse=True)
        recent = readings[: params.history_limit]
        usage = daily_usage(kind, recent, params.ewma_alpha)
        current = recent[0].percent
        days_left = math.floor(current / usage)

        snapshots = self.persistence.load_forecast_snapshots(device_id, kind)
        variance = usage_variance(snapshots, usage)
        lower, upper = confidence_band(days_left, variance, params.confidence_level)
        data_points = len(readings)
        confidence = min(1.0, 0.5 + 0.5 * min(1.0, data_points / params.minimum_data_points))
        now = self.clock()
        model_parameters = {
            "alpha": params.ewma_alpha,
            "data_points": data_points,
            "confidence_level": params.confidence_level,
        }

        result = ForecastResult(
            supply_kind=kind,
            days_left=days_left,
            confidence=confidence,
            daily_usage=usage,
            usage_variance=variance,
            lower_bound=lower,
            upper_bound=upper,
            model=MODEL_NAME,
            parameters=model_parameters,
            generated_at=now,
        )
        self.persistence.save_forecast_snapshot(
            ForecastSnapshot(
                device_id=device_id,
                supply_kind=kind,
                days_left=days_left,
                confidence=confidence,
                daily_usage=usage,
                usage_variance=variance,
                model=MODEL_NAME,
                parameters=dict(model_parameters),
                at=now,
            )
        )
        LOGGER.debug("Forecast device %s supply %s: %d days left", device_id, kind.value, days_left)
        return result

    def forecast_device(self, device_id: int, parameters: ForecastParameters | None = None) -> list[ForecastResult]:
        results = []
        for kind in self.persistence.load_supply_kinds(device_id):
            result = self.forecast_supply(device_id, kind, parameters)
            if result is not None:
                results.append(result)
        LOGGER.info("Generated %d forecasts for device %s", len(results), device_id)
        return results

    def update_all(self, devices: Iterable[Device], parameters: ForecastParameters | None = None) -> dict[int, list[ForecastResult]]:
        LOGGER.info("Starting forecast update for all devices")
        results: dict[int, list[ForecastResult]] = {}
        for device in devices:
            if not device.is_active:
                continue
            try:
                results[device.id] = self.forecast_device(device.id, parameters)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Forecast update failed for device %s", device.id)
        LOGGER.info("Completed forecast update for %d devices", len(results))
        return results
