import logging
import math
from io import BytesIO
from typing import Optional

import numpy as np
import onnxruntime as ort
import requests
from fastapi.concurrency import run_in_threadpool
from PIL import Image

import config
from errors import InferenceError, StartupError

logger = logging.getLogger(__name__)

PROVIDERS = ["CUDAExecutionProvider", "CPUExecutionProvider"]


def fetch_model(url: str, timeout: float = config.MODEL_FETCH_TIMEOUT) -> bytes:
    """Download the serialized graph. Plain paths are read from disk."""
    if not url.startswith(("http://", "https://")):
        try:
            with open(url, "rb") as f:
                return f.read()
        except OSError as e:
            raise StartupError(f"Cannot read model file {url}: {e}") from e

    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise StartupError(f"Cannot fetch model from {url}: {e}") from e
    return resp.content


def create_session(model_bytes: bytes) -> ort.InferenceSession:
    available = set(ort.get_available_providers())
    providers = [p for p in PROVIDERS if p in available] or ["CPUExecutionProvider"]
    try:
        return ort.InferenceSession(model_bytes, providers=providers)
    except Exception:
        if providers == ["CPUExecutionProvider"]:
            raise
        logger.warning("Falling back to CPUExecutionProvider", exc_info=True)
        return ort.InferenceSession(model_bytes, providers=["CPUExecutionProvider"])


def load_model(url: Optional[str] = config.MODEL_URL) -> "ModelService":
    if not url:
        raise StartupError("MODEL_URL is not set; point it at the ONNX export of the classifier")
    logger.info("Loading model from %s", url)
    model_bytes = fetch_model(url)
    try:
        session = create_session(model_bytes)
    except Exception as e:
        raise StartupError(f"Model at {url} is not a loadable graph: {e}") from e
    service = ModelService(session)
    logger.info("Model loaded! input=%s output=%s", service.input_name, service.output_name)
    return service


def resize_bilinear(arr: np.ndarray, size) -> np.ndarray:
    """Bilinear resize of an HWC array, as the model saw it during training.

    Legacy TensorFlow semantics: source coordinate is ``dst * in / out`` with no
    half-pixel offset, no corner alignment and no antialiasing, edges clamped.
    Returns float32 without rounding.
    """
    out_w, out_h = size
    in_h, in_w = arr.shape[:2]

    ys = np.arange(out_h, dtype=np.float64) * (in_h / out_h)
    y0 = np.floor(ys).astype(np.int64)
    y1 = np.minimum(y0 + 1, in_h - 1)
    dy = (ys - y0).astype(np.float32)[:, None, None]

    xs = np.arange(out_w, dtype=np.float64) * (in_w / out_w)
    x0 = np.floor(xs).astype(np.int64)
    x1 = np.minimum(x0 + 1, in_w - 1)
    dx = (xs - x0).astype(np.float32)[None, :, None]

    img = arr.astype(np.float32)
    top_left, top_right = img[y0][:, x0], img[y0][:, x1]
    bottom_left, bottom_right = img[y1][:, x0], img[y1][:, x1]

    top = top_left + (top_right - top_left) * dx
    bottom = bottom_left + (bottom_right - bottom_left) * dx
    return top + (bottom - top) * dy


def preprocess_image(file_bytes: bytes) -> np.ndarray:
    """Decode to RGB, bilinear resize to 224x224 and scale to [0, 1].

    Returns a float32 array shaped [1, 224, 224, 3] (NHWC).
    """
    try:
        img = Image.open(BytesIO(file_bytes)).convert("RGB")  # alpha dropped
        arr = resize_bilinear(np.asarray(img), config.MODEL_INPUT_SIZE)
    except Exception as e:
        raise InferenceError(f"Cannot decode image: {e}") from e

    arr = np.expand_dims(arr, 0)
    return arr / 255.0


class ModelService:
    """Read-only wrapper over a loaded session, shared by all requests."""

    def __init__(self, session):
        self._session = session
        self.input_name = session.get_inputs()[0].name
        self.output_name = session.get_outputs()[0].name

    def predict(self, image_bytes: bytes) -> float:
        tensor = preprocess_image(image_bytes)
        try:
            outputs = self._session.run([self.output_name], {self.input_name: tensor})
            prob = float(np.asarray(outputs[0]).reshape(-1)[0])
        except Exception as e:
            raise InferenceError(f"Forward pass failed: {e}") from e

        if not math.isfinite(prob):
            raise InferenceError(f"Model returned a non-finite output: {prob}")
        return prob

    async def apredict(self, image_bytes: bytes) -> float:
        return await run_in_threadpool(self.predict, image_bytes)
