from unittest.mock import MagicMock, patch

import numpy as np
import pytest
import requests

import inference
from errors import InferenceError, StartupError
from inference import ModelService, fetch_model, load_model, preprocess_image, resize_bilinear

from conftest import FakeSession, make_image


@pytest.mark.parametrize(
    "size,mode,fmt",
    [
        ((64, 48), "RGB", "PNG"),
        ((1000, 20), "RGB", "JPEG"),
        ((224, 224), "RGBA", "PNG"),
        ((3, 5), "L", "PNG"),
        ((300, 301), "P", "GIF"),
    ],
)
def test_preprocess_shape_is_fixed(size, mode, fmt):
    tensor = preprocess_image(make_image(size=size, mode=mode, fmt=fmt))
    assert tensor.shape == (1, 224, 224, 3)
    assert tensor.dtype == np.float32


def test_preprocess_scales_to_unit_range():
    white = preprocess_image(make_image(color=(255, 255, 255)))
    black = preprocess_image(make_image(color=(0, 0, 0)))
    assert np.allclose(white, 1.0)
    assert np.allclose(black, 0.0)


def test_preprocess_drops_alpha():
    tensor = preprocess_image(make_image(mode="RGBA", color=(255, 0, 0, 0)))
    assert tensor.shape[-1] == 3
    assert np.allclose(tensor[0, :, :, 0], 1.0)
    assert np.allclose(tensor[0, :, :, 1:], 0.0)


@pytest.mark.parametrize("payload", [b"", b"not an image at all", make_image()[:40]])
def test_preprocess_rejects_malformed_bytes(payload):
    with pytest.raises(InferenceError):
        preprocess_image(payload)


def test_predict_returns_first_scalar():
    session = FakeSession(value=0.73)
    model = ModelService(session)

    assert model.predict(make_image()) == pytest.approx(0.73)
    feed = session.feeds[0]["input_1"]
    assert feed.shape == (1, 224, 224, 3)


def test_predict_wraps_forward_pass_errors():
    model = ModelService(FakeSession(error=RuntimeError("bad shape")))
    with pytest.raises(InferenceError) as excinfo:
        model.predict(make_image())
    assert isinstance(excinfo.value.__cause__, RuntimeError)


def test_predict_rejects_nan_output():
    model = ModelService(FakeSession(value=float("nan")))
    with pytest.raises(InferenceError):
        model.predict(make_image())


def test_apredict_runs_off_the_loop():
    import asyncio

    model = ModelService(FakeSession(value=0.1))
    assert asyncio.run(model.apredict(make_image())) == pytest.approx(0.1)


def test_fetch_model_reads_local_path(tmp_path):
    path = tmp_path / "model.onnx"
    path.write_bytes(b"graph")
    assert fetch_model(str(path)) == b"graph"


def test_fetch_model_missing_local_path(tmp_path):
    with pytest.raises(StartupError):
        fetch_model(str(tmp_path / "missing.onnx"))


def test_fetch_model_downloads_over_http():
    resp = MagicMock(content=b"graph")
    with patch("inference.requests.get", return_value=resp) as get:
        assert fetch_model("https://example.com/model.onnx", timeout=5) == b"graph"
    get.assert_called_once_with("https://example.com/model.onnx", timeout=5)
    resp.raise_for_status.assert_called_once()


@pytest.mark.parametrize(
    "side_effect",
    [requests.ConnectionError("down"), requests.Timeout("slow")],
)
def test_fetch_model_network_failure_is_fatal(side_effect):
    with patch("inference.requests.get", side_effect=side_effect):
        with pytest.raises(StartupError):
            fetch_model("https://example.com/model.onnx")


def test_fetch_model_http_error_is_fatal():
    resp = MagicMock()
    resp.raise_for_status.side_effect = requests.HTTPError("404 Client Error")
    with patch("inference.requests.get", return_value=resp):
        with pytest.raises(StartupError):
            fetch_model("https://example.com/model.onnx")


def test_load_model_rejects_unloadable_graph():
    with patch("inference.fetch_model", return_value=b"definitely not onnx"):
        with pytest.raises(StartupError):
            load_model("https://example.com/model.onnx")


def test_load_model_wraps_session():
    with patch("inference.fetch_model", return_value=b"graph"), \
            patch("inference.create_session", return_value=FakeSession()) as create:
        model = load_model("https://example.com/model.onnx")
    create.assert_called_once_with(b"graph")
    assert isinstance(model, inference.ModelService)
    assert model.input_name == "input_1"
    assert model.output_name == "dense_out"


def test_resize_samples_without_antialiasing():
    # 4x4 -> 2x2 lands exactly on source pixels (0, 2) in each axis
    arr = np.arange(16, dtype=np.uint8).reshape(4, 4, 1) * 10
    out = resize_bilinear(arr, (2, 2))
    assert out.dtype == np.float32
    assert np.array_equal(out[:, :, 0], [[0, 20], [80, 100]])


def test_resize_interpolates_from_top_left_origin():
    # 3x3 -> 2x2: source coordinates 0 and 1.5, no half-pixel offset
    arr = np.arange(9, dtype=np.uint8).reshape(3, 3, 1) * 10
    out = resize_bilinear(arr, (2, 2))[:, :, 0]
    assert np.allclose(out, [[0.0, 15.0], [45.0, 60.0]])


def test_resize_upscale_clamps_last_row_and_column():
    # 2x2 -> 4x4: source coordinates 0, 0.5, 1, 1.5; index 2 clamps to 1
    arr = np.array([[0, 100], [200, 40]], dtype=np.uint8).reshape(2, 2, 1)
    out = resize_bilinear(arr, (4, 4))[:, :, 0]
    assert np.allclose(out[0], [0, 50, 100, 100])
    assert np.allclose(out[1], [100, 85, 70, 70])
    assert np.allclose(out[2], [200, 120, 40, 40])
    assert np.allclose(out[3], out[2])


def test_resize_keeps_channels_independent():
    arr = np.zeros((4, 6, 3), dtype=np.uint8)
    arr[..., 0] = 255
    arr[:, 3:, 2] = 90
    out = resize_bilinear(arr, (3, 2))
    assert out.shape == (2, 3, 3)
    assert np.allclose(out[..., 0], 255)
    assert np.allclose(out[..., 1], 0)
    assert np.allclose(out[..., 2], [[0, 0, 90], [0, 0, 90]])


def test_preprocess_uses_legacy_bilinear_on_textured_image():
    from io import BytesIO

    from PIL import Image

    rng = np.random.default_rng(7)
    pixels = rng.integers(0, 256, size=(448, 448, 3), dtype=np.uint8)
    buf = BytesIO()
    Image.fromarray(pixels).save(buf, format="PNG")

    tensor = preprocess_image(buf.getvalue())

    # Halving exactly picks every other source pixel
    assert np.allclose(tensor[0], pixels[::2, ::2] / 255.0)


@pytest.mark.parametrize("url", [None, ""])
def test_load_model_requires_url(url):
    with pytest.raises(StartupError, match="MODEL_URL"):
        load_model(url)
