import logging.config
import os
from dataclasses import dataclass, field, fields, asdict
from typing import List, Optional

import yaml

from .errors import ConfigError

CONFIG_FILE_DIRECTORY = os.path.join(os.path.dirname(__file__), "config_files")
DEFAULT_CONFIG_FILE = "replay.yaml"
LOGGING_CONFIG_FILE = "logging_config.yaml"

TIME_INDEXED_RESOURCES = ("location", "car_data", "position", "weather")


def load_config_file(file, directory=CONFIG_FILE_DIRECTORY):
    """
    Load a YAML config file.

    Args:
        file: File name (relative to directory) or an absolute path.
        directory: Folder holding the packaged config files.

    Returns:
        dict: Parsed document, empty if the file is blank.
    """
    filepath = file if os.path.isabs(file) else os.path.join(directory, file)
    with open(filepath, "r") as f:
        try:
            config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Could not parse {filepath}: {e}") from e
    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigError(f"{filepath} must contain a mapping at the top level")
    return config


@dataclass
class ApiConfig:
    base_url: str = "https://api.openf1.org/v1"
    timeout: float = 30.0
    min_interval: float = 0.35

    def validate(self):
        if not self.base_url:
            raise ConfigError("api.base_url must not be empty")
        if self.timeout <= 0:
            raise ConfigError("api.timeout must be positive")
        if self.min_interval < 0:
            raise ConfigError("api.min_interval must not be negative")


@dataclass
class LoaderConfig:
    chunk_minutes: float = 5.0
    prefetch_threshold: float = 0.8
    resources: List[str] = field(default_factory=lambda: ["location", "position", "car_data"])

    @property
    def chunk_seconds(self) -> float:
        return self.chunk_minutes * 60.0

    def validate(self):
        if self.chunk_minutes <= 0:
            raise ConfigError("loader.chunk_minutes must be positive")
        if not 0 < self.prefetch_threshold <= 1:
            raise ConfigError("loader.prefetch_threshold must be in (0, 1]")
        unknown = [r for r in self.resources if r not in TIME_INDEXED_RESOURCES]
        if unknown:
            raise ConfigError(f"loader.resources has unknown entries: {', '.join(unknown)}")
        if "position" not in self.resources:
            raise ConfigError("loader.resources must include 'position' for standings")


@dataclass
class LapsConfig:
    enabled: bool = True
    chunk_size: int = 10
    prefetch_threshold: float = 0.7

    def validate(self):
        if self.chunk_size <= 0:
            raise ConfigError("laps.chunk_size must be positive")
        if not 0 < self.prefetch_threshold <= 1:
            raise ConfigError("laps.prefetch_threshold must be in (0, 1]")


@dataclass
class StandingsConfig:
    window_seconds: float = 30.0
    grid_scan: int = 60

    def validate(self):
        if self.window_seconds < 0:
            raise ConfigError("standings.window_seconds must not be negative")
        if self.grid_scan <= 0:
            raise ConfigError("standings.grid_scan must be positive")


@dataclass
class PlaybackConfig:
    speed: float = 1.0
    fps: int = 25
    interpolate: bool = True

    def validate(self):
        if self.speed <= 0:
            raise ConfigError("playback.speed must be positive")
        if self.fps <= 0:
            raise ConfigError("playback.fps must be positive")


@dataclass
class CacheConfig:
    enabled: bool = True
    directory: str = ".openf1-cache"


@dataclass
class EventsConfig:
    queue_size: int = 256

    def validate(self):
        if self.queue_size <= 0:
            raise ConfigError("events.queue_size must be positive")


_SECTIONS = {
    "api": ApiConfig,
    "loader": LoaderConfig,
    "laps": LapsConfig,
    "standings": StandingsConfig,
    "playback": PlaybackConfig,
    "cache": CacheConfig,
    "events": EventsConfig,
}


@dataclass
class ReplayConfig:
    api: ApiConfig = field(default_factory=ApiConfig)
    loader: LoaderConfig = field(default_factory=LoaderConfig)
    laps: LapsConfig = field(default_factory=LapsConfig)
    standings: StandingsConfig = field(default_factory=StandingsConfig)
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    events: EventsConfig = field(default_factory=EventsConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "ReplayConfig":
        unknown = set(data) - set(_SECTIONS)
        if unknown:
            raise ConfigError(f"Unknown config sections: {', '.join(sorted(unknown))}")

        sections = {}
        for name, section_cls in _SECTIONS.items():
            values = data.get(name) or {}
            if not isinstance(values, dict):
                raise ConfigError(f"Config section '{name}' must be a mapping")
            allowed = {f.name for f in fields(section_cls)}
            bad_keys = set(values) - allowed
            if bad_keys:
                raise ConfigError(f"Unknown keys in '{name}': {', '.join(sorted(bad_keys))}")
            try:
                sections[name] = section_cls(**values)
            except TypeError as e:
                raise ConfigError(f"Invalid values in '{name}': {e}") from e

        config = cls(**sections)
        config.validate()
        return config

    def validate(self):
        for name in _SECTIONS:
            section = getattr(self, name)
            validate = getattr(section, "validate", None)
            if validate is not None:
                validate()

    def to_dict(self) -> dict:
        return asdict(self)


def _merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str] = None) -> ReplayConfig:
    """
    Build the replay configuration.

    The packaged defaults are read first and a user file, when given, is
    merged over them section by section.
    """
    data = load_config_file(DEFAULT_CONFIG_FILE)
    if path is not None:
        if not os.path.exists(path):
            raise ConfigError(f"Config file not found: {path}")
        data = _merge(data, load_config_file(os.path.abspath(path)))
    return ReplayConfig.from_dict(data)


def setup_logging(level: Optional[str] = None):
    """Configure logging from the packaged logging_config.yaml."""
    logging.config.dictConfig(load_config_file(LOGGING_CONFIG_FILE))
    if level:
        logging.getLogger("openf1_replay").setLevel(level.upper())
