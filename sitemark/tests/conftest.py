"""
Shared fixtures for sitemark tests.

Each test gets its own SQLite database file so concurrency tests exercise
real connection-level locking.
"""

import base64
import io

import pytest
from PIL import Image

from sitemark.db import init_schema, make_engine, make_session_factory
from sitemark.services.blob_storage import DatabaseBlobStorage

PLAN_URL_AAA = (
    "https://firebasestorage.googleapis.com/v0/b/demo-bucket/o/"
    "project_files%2FP1%2Fplan.pdf?alt=media&token=AAA"
)
PLAN_URL_BBB = (
    "https://firebasestorage.googleapis.com/v0/b/demo-bucket/o/"
    "project_files%2FP1%2Fplan.pdf?alt=media&token=BBB"
)


def make_png(width: int = 40, height: int = 30, color=(200, 30, 30)) -> bytes:
    """Small solid-colour PNG."""
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def png_data_url(width: int = 40, height: int = 30, color=(200, 30, 30)) -> str:
    return "data:image/png;base64," + base64.b64encode(make_png(width, height, color)).decode("ascii")


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'sitemark-test.db'}")
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def storage(session_factory):
    return DatabaseBlobStorage(session_factory, bucket="sitemark-local")


@pytest.fixture
def author():
    return {"uid": "user-1", "name": "Ada Field", "email": "ada@example.com"}
