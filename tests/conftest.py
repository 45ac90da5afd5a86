"""Pytest configuration and shared fixtures."""

import os
import sys
from pathlib import Path

import pytest

# Add project paths
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from tests.meet_relay_fakes import FakeClock, FakeEncoderFactory, FakeHost, FakeViewport, FakeWebSocket  # noqa: E402
from tool_modules.aa_meet_relay.src.capabilities import Rect  # noqa: E402
from tool_modules.aa_meet_relay.src.config import (  # noqa: E402
    CompositionConfig,
    MeetRelayConfig,
    TransportConfig,
    reset_config,
)


@pytest.fixture
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def temp_dir(tmp_path):
    """Return a temporary directory for test files."""
    return tmp_path


@pytest.fixture(autouse=True)
def setup_env():
    """Set up environment variables for testing."""
    # Save original values
    original_env = dict(os.environ)

    # Set test environment
    os.environ.setdefault("TESTING", "1")

    yield

    # Restore original environment
    os.environ.clear()
    os.environ.update(original_env)
    reset_config()


# ============================================================================
# Meet Relay Fixtures
# ============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_ws():
    return FakeWebSocket()


@pytest.fixture
def fake_host():
    return FakeHost(FakeViewport(Rect(100, 50, 16, 8)))


@pytest.fixture
def encoder_factory():
    return FakeEncoderFactory()


@pytest.fixture
def relay_config():
    """Small frames so tests never allocate full HD buffers."""
    return MeetRelayConfig(
        transport=TransportConfig(filler_width=4, filler_height=2, max_pending_media_frames=8),
        composition=CompositionConfig(fps=30, chunk_interval_ms=1000, audio_sample_rate=8000, audio_block_ms=10),
    )
