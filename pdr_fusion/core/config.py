"""Configuration management for pedestrian dead-reckoning fusion."""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml


DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "default.yaml"


@dataclass
class ProcessNoiseConfig:
    """Mode-dependent base process noise."""
    stationary: float = 0.01
    walking: float = 0.1
    crawling: float = 0.05


@dataclass
class PdrNoiseConfig:
    """Standard deviations for the PDR position and yaw measurement."""
    position_stationary: float = 0.005
    position_walking: float = 0.05
    position_running: float = 0.15
    position_crawling: float = 0.03
    position_default: float = 0.08
    yaw_stationary: float = 0.02
    yaw_walking: float = 0.05
    yaw_running: float = 0.1
    yaw_crawling: float = 0.05
    yaw_default: float = 0.08


@dataclass
class MapMatchingConfig:
    """Vector map snapping parameters."""
    threshold_m: float = 2.0
    weight: float = 0.5
    wall_veto: bool = True


@dataclass
class EkfConfig:
    """Extended Kalman filter configuration."""
    process_noise: ProcessNoiseConfig = field(default_factory=ProcessNoiseConfig)
    pdr_noise: PdrNoiseConfig = field(default_factory=PdrNoiseConfig)
    map_matching: MapMatchingConfig = field(default_factory=MapMatchingConfig)
    barometer_noise: float = 0.1
    magnetometer_noise: float = 0.2
    zupt_noise: float = 0.01
    max_walking_speed: float = 2.0
    max_crawling_speed: float = 0.5
    sea_level_pressure_hpa: float = 1013.25
    auto_correction_interval_s: float = 10.0
    innovation_history: int = 100


@dataclass
class AttitudeConfig:
    """Madgwick attitude tracker configuration."""
    update_rate_hz: float = 50.0
    beta: float = 0.1
    mag_confidence_threshold: float = 0.7
    stability_window_s: float = 2.0
    stability_min_samples: int = 10
    accel_variance_threshold: float = 0.2
    gyro_mean_threshold: float = 0.1
    stability_duration_s: float = 2.0
    recalibration_interval_s: float = 30.0
    auto_recalibration: bool = True
    expected_mag_norm: float = 50.0
    mag_history_size: int = 50
    mag_min_samples: int = 10


@dataclass
class CalibrationConfig:
    """Body-frame calibration configuration."""
    samples_required: int = 30
    gravity_threshold: float = 1.0
    gyro_threshold: float = 0.15
    duration_s: float = 3.0
    gravity_nominal: float = 9.81


@dataclass
class OrientationConfig:
    """Continuous heading smoother configuration."""
    alpha: float = 0.1
    drift_threshold_deg: float = 20.0
    accuracy_window: int = 10
    notification_interval_s: float = 30.0
    heading_in_degrees: bool = True
    history_s: float = 5.0


@dataclass
class StepConfig:
    """Step detector configuration."""
    user_height_m: float = 1.7
    height_ratio: float = 0.43
    buffer_size: int = 50
    detrend_window: int = 25
    absolute_floor: float = 0.12
    threshold_ceiling: float = 1.0
    neighbor_ratio: float = 1.2
    strong_peak_sigma: float = 1.5
    k_walking: float = 1.1
    k_running: float = 1.2
    k_crawling: float = 1.5
    k_default: float = 1.2
    min_interval_walking_ms: float = 500.0
    min_interval_running_ms: float = 350.0
    min_interval_crawling_ms: float = 700.0
    stationary_step_limit: int = 10
    guard_after_steps: int = 10
    max_frequency_walking_hz: float = 4.0
    max_frequency_running_hz: float = 8.0
    max_frequency_stationary_hz: float = 3.0
    max_frequency_default_hz: float = 4.0
    gyro_confirmation: bool = True
    gyro_confirmation_threshold: float = 0.3
    gyro_buffer_size: int = 50
    gyro_window: int = 10
    gyro_min_samples: int = 5
    cadence_steps: int = 5
    default_cadence: float = 1.8


@dataclass
class EngineConfig:
    """Fusion coordinator configuration."""
    queue_size: int = 512
    heading_confidence_threshold: float = 0.5
    mode_window_s: float = 2.0
    running_cadence: float = 2.5
    initial_mode: str = "stationary"
    pdr_position_update: bool = True


@dataclass
class MonitoringConfig:
    """Performance monitoring and diagnostics configuration."""
    window_size: int = 1000
    log_interval_s: float = 10.0
    diagnostics_size: int = 200


@dataclass
class Config:
    """Complete configuration for the fusion core."""
    ekf: EkfConfig = field(default_factory=EkfConfig)
    attitude: AttitudeConfig = field(default_factory=AttitudeConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    orientation: OrientationConfig = field(default_factory=OrientationConfig)
    step: StepConfig = field(default_factory=StepConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Config":
        """Build a Config from a nested mapping, keeping defaults for gaps."""
        if not data:
            return cls()
        return _dict_to_dataclass(data, cls)


def _dict_to_dataclass(data: dict, cls: type) -> object:
    """Recursively convert dictionary to dataclass."""
    if not hasattr(cls, "__dataclass_fields__"):
        return data

    defaults = cls()
    kwargs = {}

    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        current = getattr(defaults, f.name)
        if hasattr(current, "__dataclass_fields__") and isinstance(value, dict):
            kwargs[f.name] = _dict_to_dataclass(value, type(current))
        else:
            kwargs[f.name] = value

    return cls(**kwargs)


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from YAML file.

    Args:
        config_path: Path to configuration file. If None, uses the packaged
            default file.

    Returns:
        Configuration object with all settings.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
    """
    if config_path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            return Config()
        config_path = str(DEFAULT_CONFIG_PATH)

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    return Config.from_dict(data)
