"""Shared fixtures: in-memory database, fake encoder and local image store."""

import os
import tempfile

# Point the service at throwaway locations before config is imported
_TMP = tempfile.mkdtemp(prefix="face-attendance-tests-")
os.environ["DATA_DIR"] = os.path.join(_TMP, "data")
os.environ["UPLOAD_DIR"] = os.path.join(_TMP, "uploads")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["IMAGE_STORE"] = "local"

import numpy as np
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

import app as service
from face_engine import EncoderError
from image_store import LocalImageStore


def vec(*values, dim=128):
    """A 128-d float32 vector starting with ``values`` and padded with zeros."""
    out = np.zeros(dim, dtype=np.float32)
    out[:len(values)] = values
    return out


class FakeFaceEngine:
    """Maps exact image bytes to embeddings; unknown bytes have no face."""

    model_available = True

    def __init__(self):
        self.faces = {}
        self.fail = False

    def add(self, data: bytes, embedding):
        self.faces[data] = np.asarray(embedding, dtype=np.float32)

    def encode(self, data):
        if self.fail:
            raise EncoderError("model exploded")
        return self.faces.get(data)


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(db_engine):
    with Session(db_engine) as session:
        yield session


@pytest.fixture
def face_engine():
    return FakeFaceEngine()


@pytest.fixture
def image_store(tmp_path):
    return LocalImageStore(root=tmp_path / "faces")


@pytest.fixture
def overrides(session, face_engine, image_store):
    service.app.dependency_overrides[service.get_session] = lambda: session
    service.app.dependency_overrides[service.get_face_engine] = lambda: face_engine
    service.app.dependency_overrides[service.get_image_store] = lambda: image_store
    yield service.app
    service.app.dependency_overrides.clear()


@pytest.fixture
def client(overrides):
    return TestClient(overrides)
