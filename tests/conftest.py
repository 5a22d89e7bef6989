import pytest
import pytest_asyncio

from encwheel.addressing import ClusterAddresses
from encwheel.config import EncwheelConfig
from encwheel.simulator import LocalCluster


@pytest.fixture
def test_config():
    return EncwheelConfig(
        key_fetch_attempts=5,
        key_fetch_delay_seconds=0.0,
        request_timeout_seconds=2.0,
        upload_chunk_size=4,
    )


@pytest.fixture
def addresses(test_config) -> ClusterAddresses:
    return test_config.addresses()


@pytest_asyncio.fixture
async def cluster(addresses):
    local = LocalCluster(addresses.cluster_program_id)
    yield local
    await local.aclose()


@pytest.fixture(autouse=True)
def isolated_home(monkeypatch, tmp_path):
    """Never read a developer's real ~/.config/encwheel."""
    monkeypatch.setenv("ENCWHEEL_HOME", str(tmp_path / "encwheel_home"))
