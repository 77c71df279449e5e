import os
import sys
from unittest.mock import Mock

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(project_root)

from image_server.cache_store import CacheStore
from image_server.config import ServiceConfig, ServiceContext
from tests.helpers import FakeRedis, image_bytes

ORIGIN_URL = "http://origin.test/uri/"
METADATA_URL = "http://arc.test/"
PLACEHOLDER = "/missing_v6.jpg"
PLACEHOLDER_SIZE = (10, 10)


@pytest.fixture
def mirror_dir(tmp_path):
    return tmp_path / "img"


@pytest.fixture
def config(mirror_dir):
    return ServiceConfig(
        remote_base_url=ORIGIN_URL,
        mirror_dir=mirror_dir,
        placeholder_path=PLACEHOLDER,
        metadata_base_url=METADATA_URL,
        metadata_query_template="jp/[NAMESPACE]?id=[KEYID]",
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def session():
    return Mock()


@pytest.fixture
def ctx(config, fake_redis, session):
    return ServiceContext(config=config, store=CacheStore(fake_redis), session=session)


@pytest.fixture
def placeholder(mirror_dir):
    """Mirror the placeholder image locally (10x10 grey jpg)."""
    path = mirror_dir / PLACEHOLDER.lstrip("/")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(image_bytes(PLACEHOLDER_SIZE, color=(128, 128, 128)))
    return path
