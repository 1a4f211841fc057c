import pytest
from fastapi.testclient import TestClient

from habitlog.config import Settings
from main import create_app

CSV_KEY = "test-csv-key"
SCREEN_KEY = "test-screen-key"


@pytest.fixture
def make_settings(tmp_path):
    def _make(storage: str = "file", **overrides) -> Settings:
        values = {
            "storage": storage,
            "data_dir": str(tmp_path / "data"),
            "csv_key": CSV_KEY,
            "screen_time_key": SCREEN_KEY,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture(params=["file", "blob", "sql"])
def storage_backend(request) -> str:
    return request.param


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c


@pytest.fixture
def backend_client(make_settings, storage_backend):
    with TestClient(create_app(make_settings(storage_backend))) as c:
        yield c
