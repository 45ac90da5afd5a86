"""
Meet Relay Configuration.

Centralizes all configuration for the meeting relay agent including:
- Collector connection and filler-frame timing
- Composition (viewport, frame rate, encoder cadence, audio mixing)
- Capture endpoints and side-channel labels
"""

import logging
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Optional

from tool_modules.common import PROJECT_ROOT, load_project_config

__project_root__ = PROJECT_ROOT

logger = logging.getLogger(__name__)

CONFIG_SECTION = "meet_relay"


class ConfigValidationError(Exception):
    """Raised when the meet_relay config section fails validation."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Config validation failed: {'; '.join(errors)}")


@dataclass
class TransportConfig:
    """Collector connection settings."""

    host: str = "localhost"
    port: int = 8765

    # Filler frames keep the outbound video continuous during gaps
    filler_tick_ms: int = 250
    filler_gap_ms: int = 500
    filler_width: int = 1920
    filler_height: int = 1080
    filler_stream_id: str = "0"

    # Media frames waiting to be written before new ones are dropped
    max_pending_media_frames: int = 256

    # How long shutdown waits for queued frames to reach the collector
    drain_timeout_ms: int = 2000

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"


@dataclass
class CompositionConfig:
    """Canvas compositing and encoder settings."""

    viewport_selector: str = "main"
    fps: int = 30
    chunk_interval_ms: int = 1000

    # Mixed audio is mono float32
    audio_sample_rate: int = 48000
    audio_block_ms: int = 20

    @property
    def audio_block_samples(self) -> int:
        return self.audio_sample_rate * self.audio_block_ms // 1000


@dataclass
class CaptureConfig:
    """Where meeting state comes from."""

    sync_collections_url: str = (
        "https://meet.google.com/$rpc/google.rtc.meetings.v1.MeetingSpaceService/SyncMeetingSpaceCollections"
    )
    collections_channel: str = "collections"
    captions_channel: str = "captions"
    media_director_channel: str = "media-director"


@dataclass
class MeetRelayConfig:
    """Main configuration for the meet relay."""

    transport: TransportConfig = field(default_factory=TransportConfig)
    composition: CompositionConfig = field(default_factory=CompositionConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)


def _validate_section(name: str, section_cls: type, data: Any) -> list[str]:
    """Check that every known key in a config section has the expected type."""
    if not isinstance(data, dict):
        return [f"Section '{CONFIG_SECTION}.{name}' must be a dict, got {type(data).__name__}"]

    errors: list[str] = []
    expected = {f.name: f.type for f in fields(section_cls)}
    for key, value in data.items():
        if key not in expected:
            logger.warning(f"Ignoring unknown config key: {CONFIG_SECTION}.{name}.{key}")
            continue
        expected_type = expected[key]
        if isinstance(expected_type, str):
            expected_type = {"str": str, "int": int, "bool": bool}.get(expected_type, object)
        # bool is an int subclass but never a valid int setting here
        if isinstance(value, bool) and expected_type is not bool:
            errors.append(f"Invalid type for {CONFIG_SECTION}.{name}.{key}: expected {expected_type.__name__}, got bool")
        elif not isinstance(value, expected_type):
            errors.append(
                f"Invalid type for {CONFIG_SECTION}.{name}.{key}: expected {expected_type.__name__}, "
                f"got {type(value).__name__}"
            )
    return errors


def config_from_dict(data: dict[str, Any]) -> MeetRelayConfig:
    """Build a MeetRelayConfig from the meet_relay section of config.json.

    Raises:
        ConfigValidationError: if any section or value has the wrong type
    """
    config = MeetRelayConfig()
    errors: list[str] = []

    for section_field in fields(MeetRelayConfig):
        if section_field.name not in data:
            continue
        section = getattr(config, section_field.name)
        section_data = data[section_field.name]
        section_errors = _validate_section(section_field.name, type(section), section_data)
        if section_errors:
            errors.extend(section_errors)
            continue
        known = {f.name for f in fields(section)}
        for key, value in section_data.items():
            if key in known:
                setattr(section, key, value)

    for key in data:
        if key not in {f.name for f in fields(MeetRelayConfig)}:
            logger.warning(f"Ignoring unknown config section: {CONFIG_SECTION}.{key}")

    if errors:
        raise ConfigValidationError(errors)
    return config


def load_config(path: Optional[Path] = None) -> MeetRelayConfig:
    """Load the meet relay config from config.json, falling back to defaults."""
    project_config = load_project_config(path)
    section = project_config.get(CONFIG_SECTION, {})
    if not isinstance(section, dict):
        raise ConfigValidationError([f"Section '{CONFIG_SECTION}' must be a dict, got {type(section).__name__}"])
    config = config_from_dict(section)
    logger.debug(f"Loaded meet relay config (collector {config.transport.url})")
    return config


# Global config instance
_config: Optional[MeetRelayConfig] = None


def get_config() -> MeetRelayConfig:
    """Get the global config instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def update_config(**kwargs) -> MeetRelayConfig:
    """Update config with new values.

    Section dataclasses replace the whole section; dicts update it key by key.
    """
    global _config
    if _config is None:
        _config = load_config()
    for key, value in kwargs.items():
        if not hasattr(_config, key):
            logger.warning(f"Ignoring unknown config section: {key}")
            continue
        if is_dataclass(value):
            setattr(_config, key, value)
        elif isinstance(value, dict):
            section = getattr(_config, key)
            for sub_key, sub_value in value.items():
                if hasattr(section, sub_key):
                    setattr(section, sub_key, sub_value)
    return _config


def reset_config() -> None:
    """Drop the cached global config (next get_config() reloads it)."""
    global _config
    _config = None
