from io import BytesIO
from types import SimpleNamespace

import numpy as np
import pytest
from fastapi.testclient import TestClient
from PIL import Image

import main
from inference import ModelService


class FakeSession:
    """Stands in for onnxruntime.InferenceSession; returns a fixed probability."""

    def __init__(self, value=0.9, error=None):
        self.value = value
        self.error = error
        self.feeds = []

    def get_inputs(self):
        return [SimpleNamespace(name="input_1")]

    def get_outputs(self):
        return [SimpleNamespace(name="dense_out")]

    def run(self, output_names, feeds):
        self.feeds.append(feeds)
        if self.error is not None:
            raise self.error
        return [np.array([[self.value]], dtype=np.float32)]


class FakeStore:
    def __init__(self, error=None):
        self.error = error
        self.saved = []
        self.closed = False

    async def save(self, record):
        self.saved.append(record)
        if self.error is not None:
            raise self.error
        return record.id

    def close(self):
        self.closed = True


def make_image(size=(64, 48), mode="RGB", fmt="PNG", color=None):
    buf = BytesIO()
    Image.new(mode, size, color if color is not None else 128).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def png_bytes():
    return make_image()


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def client(session, store):
    main.app.state.model = ModelService(session)
    main.app.state.store = store
    main.app.state.limiter = None
    # No context manager: the lifespan (model download, db connect) does not run
    return TestClient(main.app)
