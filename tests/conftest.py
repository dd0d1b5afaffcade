"""
Pytest configuration and fixtures for singbox-manager tests.
"""

import sys
import tempfile
from pathlib import Path
from typing import Generator, List, Tuple

import pytest

# Add scripts directory to path for imports
SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))

TEST_HOST = "203.0.113.5"
TEST_PORT = 443


class FakeKeyProvider:
    """Key provider that never shells out to sing-box.

    Keys are real X25519 pairs; short IDs are predictable so URIs
    can be asserted exactly.
    """

    def __init__(self):
        self.calls = 0

    def generate_key_pair(self) -> Tuple[str, str]:
        from key_provider import generate_x25519_keypair

        self.calls += 1
        return generate_x25519_keypair()

    def generate_short_ids(self, count: int = 4) -> List[str]:
        return [f"{self.calls:02x}{index:06x}" for index in range(count)]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def state_path(temp_dir: Path) -> Path:
    return temp_dir / "state" / "state.json"


@pytest.fixture
def config_path(temp_dir: Path) -> Path:
    return temp_dir / "config.json"


@pytest.fixture
def key_provider() -> FakeKeyProvider:
    return FakeKeyProvider()


@pytest.fixture
def store(state_path: Path):
    from state_store import StateStore

    return StateStore(state_path)


@pytest.fixture
def uninitialized_manager(store, config_path: Path, key_provider: FakeKeyProvider):
    """RosterManager with no state file yet."""
    from roster_manager import RosterManager

    return RosterManager(store, config_path, key_provider=key_provider)


@pytest.fixture
def manager(uninitialized_manager):
    """RosterManager initialized for TEST_HOST:TEST_PORT."""
    uninitialized_manager.initialize(TEST_HOST, TEST_PORT)
    return uninitialized_manager
