"""Shared fixtures: synthetic scans, stub runtimes and a tiny real ONNX graph."""
from __future__ import annotations

import io
import threading
import time
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import onnx
import pytest
from onnx import TensorProto, helper
from PIL import Image

from btcs.services.session import ModelSpec, SessionCache

LABELS = ("Glioma", "Meningioma", "Pituitary", "No Tumor")


class StubEngine:
    """Stands in for ``onnxruntime.InferenceSession``."""

    def __init__(
        self,
        logits: Sequence[float] = (1.0, 1.0, 1.0, 1.0),
        *,
        input_name: str = "input",
        input_shape: Sequence = (1, 3, 224, 224),
        output_names: Sequence[str] = ("output",),
        extra_inputs: int = 0,
        metadata: Optional[Dict[str, str]] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        respond: Optional[Callable[[np.ndarray], Sequence[float]]] = None,
    ) -> None:
        self.logits = list(logits)
        self.input_name = input_name
        self.input_shape = list(input_shape)
        self.output_names = list(output_names)
        self.extra_inputs = extra_inputs
        self.metadata = metadata or {}
        self.error = error
        self.delay = delay
        self.respond = respond
        self.feeds: List[Dict[str, np.ndarray]] = []
        self._lock = threading.Lock()

    def get_inputs(self):
        declared = [SimpleNamespace(name=self.input_name, shape=self.input_shape)]
        declared += [
            SimpleNamespace(name=f"extra_{idx}", shape=[1]) for idx in range(self.extra_inputs)
        ]
        return declared

    def get_outputs(self):
        return [SimpleNamespace(name=name) for name in self.output_names]

    def get_modelmeta(self):
        return SimpleNamespace(custom_metadata_map=dict(self.metadata))

    def run(self, output_names, feeds):
        with self._lock:
            self.feeds.append(feeds)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.respond is not None:
            logits = self.respond(next(iter(feeds.values())))
        else:
            logits = self.logits
        return [np.asarray([logits], dtype=np.float32)]


@pytest.fixture
def model_file(tmp_path):
    path = tmp_path / "model.onnx"
    path.write_bytes(b"stub-artifact")
    return path


@pytest.fixture
def stub_model(model_file):
    """Build ``(spec, cache, engine)`` around a stub engine."""

    def _build(labels: Sequence[str] = LABELS, **engine_kwargs):
        engine = StubEngine(**engine_kwargs)
        cache = SessionCache(engine_factory=lambda path, config: engine)
        spec = ModelSpec(path=str(model_file), labels=tuple(labels))
        return spec, cache, engine

    return _build


def _tiny_classifier(metadata: Optional[Dict[str, str]] = None) -> onnx.ModelProto:
    """Global average pool over RGB followed by a 3x4 linear layer."""
    weights = np.array(
        [
            [2.0, -1.0, 0.5, 0.0],
            [-1.0, 2.0, 0.5, 0.0],
            [0.0, -1.0, 0.5, 2.0],
        ],
        dtype=np.float32,
    )
    bias = np.array([0.1, 0.0, -0.1, 0.2], dtype=np.float32)
    graph = helper.make_graph(
        [
            helper.make_node("GlobalAveragePool", ["pixel_values"], ["pooled"]),
            helper.make_node("Flatten", ["pooled"], ["features"], axis=1),
            helper.make_node("MatMul", ["features", "weights"], ["scores"]),
            helper.make_node("Add", ["scores", "bias"], ["logits"]),
        ],
        "tiny_tumor_classifier",
        [helper.make_tensor_value_info("pixel_values", TensorProto.FLOAT, [1, 3, 224, 224])],
        [helper.make_tensor_value_info("logits", TensorProto.FLOAT, [1, 4])],
        initializer=[
            helper.make_tensor("weights", TensorProto.FLOAT, weights.shape, weights.flatten().tolist()),
            helper.make_tensor("bias", TensorProto.FLOAT, bias.shape, bias.tolist()),
        ],
    )
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model.ir_version = 8
    if metadata:
        helper.set_model_props(model, metadata)
    onnx.checker.check_model(model)
    return model


@pytest.fixture
def onnx_model_path(tmp_path):
    path = tmp_path / "tiny_classifier.onnx"
    onnx.save(_tiny_classifier({"class_labels": ",".join(LABELS)}), str(path))
    return path


def image_bytes(
    size=(224, 224),
    color=(128, 128, 128),
    mode: str = "RGB",
    fmt: str = "PNG",
) -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, size, color=color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def gray_scan() -> bytes:
    return image_bytes()


@pytest.fixture
def make_image():
    return image_bytes
