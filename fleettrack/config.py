# Runtime settings for the tracking core

import os
from dataclasses import dataclass, field
from typing import List

DEFAULT_PALETTE = [
    "#3b82f6",  # blue
    "#22c55e",  # green
    "#f59e0b",  # amber
    "#ef4444",  # red
    "#a855f7",  # purple
    "#ec4899",  # pink
    "#14b8a6",  # teal
    "#f97316",  # orange
]


@dataclass
class SimulationConfig:
    tick_interval: float = 0.1          # s between ticks
    steps_per_segment: int = 600        # ticks to traverse one segment
    cruise_speed_kmh: float = 42.0
    speed_amplitude_kmh: float = 8.0
    speed_period_s: float = 2.0
    battery_drain_pct: float = 85.0     # drained over the full mission
    battery_floor_pct: float = 8.0
    autotick: bool = True               # False: caller drives tick()


@dataclass
class LiveTelemetryConfig:
    port: int = 5000
    path: str = "/ws/telemetry"
    proximity_radius_m: float = 50.0
    speed_ceiling_kmh: float = 200.0    # faster fixes are treated as GPS noise
    reconnect_delay_s: float = 3.0
    reconnect_max_delay_s: float = 30.0
    open_timeout_s: float = 10.0
    subscribe_topics: List[str] = field(default_factory=lambda: ["all"])

    def url_for(self, hostname: str) -> str:
        return f"ws://{hostname}:{self.port}{self.path}"


@dataclass
class ReportConfig:
    battery_start_pct: float = 100.0
    peak_speed_factor: float = 1.15


@dataclass
class TrackingConfig:
    """Top-level configuration for one tracking session"""
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    live: LiveTelemetryConfig = field(default_factory=LiveTelemetryConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    palette: List[str] = field(default_factory=lambda: list(DEFAULT_PALETTE))
    registry_url: str = "http://localhost:3000/api"
    max_notices: int = 20

    @classmethod
    def from_env(cls, prefix: str = "FLEETTRACK_") -> "TrackingConfig":
        """Defaults overlaid with FLEETTRACK_* environment variables"""
        config = cls()

        def _get(name, cast, default):
            raw = os.getenv(prefix + name)
            if raw is None or raw == "":
                return default
            return cast(raw)

        sim = config.simulation
        sim.tick_interval = _get("TICK_INTERVAL", float, sim.tick_interval)
        sim.steps_per_segment = _get("STEPS_PER_SEGMENT", int, sim.steps_per_segment)
        sim.cruise_speed_kmh = _get("CRUISE_SPEED_KMH", float, sim.cruise_speed_kmh)
        sim.battery_floor_pct = _get("BATTERY_FLOOR_PCT", float, sim.battery_floor_pct)

        live = config.live
        live.port = _get("TELEMETRY_PORT", int, live.port)
        live.path = _get("TELEMETRY_PATH", str, live.path)
        live.proximity_radius_m = _get("PROXIMITY_RADIUS_M", float, live.proximity_radius_m)
        live.speed_ceiling_kmh = _get("SPEED_CEILING_KMH", float, live.speed_ceiling_kmh)
        live.reconnect_delay_s = _get("RECONNECT_DELAY_S", float, live.reconnect_delay_s)
        live.reconnect_max_delay_s = _get("RECONNECT_MAX_DELAY_S", float, live.reconnect_max_delay_s)

        config.registry_url = _get("REGISTRY_URL", str, config.registry_url)
        return config
