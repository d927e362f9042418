from pathlib import Path

import pytest

from perfstat.config import NavigationSettings
from perfstat.data.catalog import FormCatalog
from perfstat.data.storage import Database
from perfstat.data.store import StatisticStore
from perfstat.domain.models import Topic
from perfstat.engine.rollup import load_rollup_config

BASE = Path(__file__).resolve().parents[1]
CATALOG_FILE = BASE / "config" / "catalog.yaml"
ROLLUP_FILE = BASE / "config" / "rollup.yaml"


@pytest.fixture
def catalog():
    return FormCatalog.from_file(CATALOG_FILE)


@pytest.fixture
def rollup_config():
    return load_rollup_config(ROLLUP_FILE)


@pytest.fixture
def store(tmp_path):
    return StatisticStore(Database(tmp_path / "perfstat.db"))


@pytest.fixture
def nav_config():
    """Small search bounds and no probe delays."""
    return NavigationSettings(
        max_module_search=3,
        max_topics_per_module=2,
        probe_delay_seconds=0,
        probe_error_delay_seconds=0,
    )


@pytest.fixture
def make_topic():
    def _make(**data) -> Topic:
        data.setdefault("id", 1)
        return Topic.model_validate(data)

    return _make
