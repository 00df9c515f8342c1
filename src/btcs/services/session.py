"""ONNX Runtime session wrapper and the process-wide session cache."""
from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import onnxruntime as ort

from ..utils.logger import get_logger
from .errors import InferenceError, ModelLoadError
from .preprocess import INPUT_SHAPE

logger = get_logger(__name__)

LABELS_METADATA_KEY = "class_labels"

GRAPH_OPTIMIZATION_LEVELS = {
    "disable": ort.GraphOptimizationLevel.ORT_DISABLE_ALL,
    "basic": ort.GraphOptimizationLevel.ORT_ENABLE_BASIC,
    "extended": ort.GraphOptimizationLevel.ORT_ENABLE_EXTENDED,
    "all": ort.GraphOptimizationLevel.ORT_ENABLE_ALL,
}

EXECUTION_PROVIDERS = {
    "cpu": "CPUExecutionProvider",
    "cuda": "CUDAExecutionProvider",
    "coreml": "CoreMLExecutionProvider",
    "dml": "DmlExecutionProvider",
}


@dataclass(frozen=True)
class SessionConfig:
    """Runtime hints handed to ONNX Runtime when a session is created.

    None of these change the numbers a model produces, only speed and memory
    use. Instances are immutable so they can key the session cache.
    """

    execution_backend: str = "cpu"
    graph_optimization_level: str = "all"
    memory_arena: bool = True
    intra_op_num_threads: int = 0

    def __post_init__(self) -> None:
        if self.graph_optimization_level not in GRAPH_OPTIMIZATION_LEVELS:
            raise ValueError(
                f"Unknown graph optimization level {self.graph_optimization_level!r}; "
                f"expected one of {sorted(GRAPH_OPTIMIZATION_LEVELS)}"
            )
        if self.intra_op_num_threads < 0:
            raise ValueError("intra_op_num_threads must be >= 0")

    @property
    def providers(self) -> List[str]:
        backend = self.execution_backend.strip()
        provider = EXECUTION_PROVIDERS.get(backend.lower(), backend)
        if provider == "CPUExecutionProvider":
            return [provider]
        return [provider, "CPUExecutionProvider"]

    def session_options(self) -> ort.SessionOptions:
        options = ort.SessionOptions()
        options.graph_optimization_level = GRAPH_OPTIMIZATION_LEVELS[self.graph_optimization_level]
        options.enable_cpu_mem_arena = self.memory_arena
        options.enable_mem_pattern = self.memory_arena
        if self.intra_op_num_threads:
            options.intra_op_num_threads = self.intra_op_num_threads
        return options


@dataclass(frozen=True)
class ModelSpec:
    """Which artifact to load and the label order it was exported with."""

    path: str
    labels: Tuple[str, ...]
    input_name: Optional[str] = "input"
    output_name: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "labels", tuple(self.labels))
        if not self.labels:
            raise ValueError("A model spec needs at least one class label")
        if len(set(self.labels)) != len(self.labels):
            raise ValueError(f"Class labels must be unique, got {list(self.labels)}")


EngineFactory = Callable[[str, SessionConfig], Any]


def create_engine(model_path: str, config: SessionConfig) -> ort.InferenceSession:
    return ort.InferenceSession(
        model_path,
        sess_options=config.session_options(),
        providers=config.providers,
    )


def parse_labels(raw: str) -> List[str]:
    """Read a label list stored as JSON or as a comma-separated string."""
    raw = raw.strip()
    if raw.startswith("["):
        try:
            values = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ModelLoadError(f"Model metadata {LABELS_METADATA_KEY!r} is not valid JSON") from exc
        return [str(value).strip() for value in values]
    return [value.strip() for value in raw.split(",") if value.strip()]


def _shape_matches(declared: Sequence[Any], expected: Sequence[int]) -> bool:
    if len(declared) != len(expected):
        return False
    # Symbolic or unknown dimensions (strings, None) accept anything.
    return all(not isinstance(dim, int) or dim == want for dim, want in zip(declared, expected))


@dataclass
class ModelSession:
    """A loaded classifier bound to its discovered input and output names."""

    engine: Any
    model_path: str
    config: SessionConfig
    input_name: str
    output_name: str
    labels: Optional[Tuple[str, ...]] = None

    def run(self, tensor: np.ndarray) -> np.ndarray:
        """Execute one forward pass and return the flat logit vector."""
        array = np.asarray(tensor, dtype=np.float32)
        if array.shape != INPUT_SHAPE:
            raise InferenceError(
                f"Input tensor has shape {tuple(array.shape)}, expected {INPUT_SHAPE}"
            )
        try:
            outputs = self.engine.run([self.output_name], {self.input_name: array})
        except Exception as exc:
            raise InferenceError(f"Forward pass failed: {exc}") from exc
        if not outputs:
            raise InferenceError(f"Model returned no value for output {self.output_name!r}")
        return np.asarray(outputs[0], dtype=np.float32).reshape(-1)


def _discover_input(engine: Any, fallback: Optional[str]) -> str:
    inputs = engine.get_inputs()
    if len(inputs) != 1:
        raise ModelLoadError(f"Expected a model with exactly one input, found {len(inputs)}")
    declared = inputs[0]
    if not _shape_matches(list(declared.shape), INPUT_SHAPE):
        raise ModelLoadError(
            f"Model input {declared.name!r} has shape {list(declared.shape)}, expected {list(INPUT_SHAPE)}"
        )
    if fallback and fallback != declared.name:
        logger.warning(
            "Configured input name overridden by model interface",
            configured=fallback,
            discovered=declared.name,
        )
    return declared.name


def _discover_output(engine: Any, fallback: Optional[str]) -> str:
    names = [output.name for output in engine.get_outputs()]
    if not names:
        raise ModelLoadError("Model declares no outputs")
    if len(names) == 1:
        if fallback and fallback != names[0]:
            logger.warning(
                "Configured output name overridden by model interface",
                configured=fallback,
                discovered=names[0],
            )
        return names[0]
    if fallback in names:
        return fallback
    logger.warning(
        "Model declares several outputs, using the first",
        outputs=names,
        configured=fallback,
        chosen=names[0],
    )
    return names[0]


def _declared_labels(engine: Any) -> Optional[List[str]]:
    getter = getattr(engine, "get_modelmeta", None)
    if getter is None:
        return None
    metadata: Dict[str, str] = getattr(getter(), "custom_metadata_map", None) or {}
    raw = metadata.get(LABELS_METADATA_KEY)
    return parse_labels(raw) if raw else None


def load(
    model_path: str | os.PathLike,
    config: SessionConfig | None = None,
    labels: Sequence[str] | None = None,
    *,
    input_name: Optional[str] = "input",
    output_name: Optional[str] = None,
    engine_factory: EngineFactory | None = None,
) -> ModelSession:
    """Load a model artifact into a ready-to-run session.

    Input and output names come from the model's declared interface; the
    names passed here only serve as defaults. When the artifact stores its
    label order under the ``class_labels`` metadata key, it must equal
    ``labels``.
    """
    config = config or SessionConfig()
    path = Path(model_path)
    if not path.is_file():
        raise ModelLoadError(f"Model artifact not found at {path}")
    if not os.access(path, os.R_OK):
        raise ModelLoadError(f"Model artifact at {path} is not readable")

    factory = engine_factory or create_engine
    try:
        engine = factory(str(path), config)
    except Exception as exc:
        raise ModelLoadError(f"Could not load model artifact at {path}: {exc}") from exc

    session = ModelSession(
        engine=engine,
        model_path=str(path),
        config=config,
        input_name=_discover_input(engine, input_name),
        output_name=_discover_output(engine, output_name),
    )

    declared = _declared_labels(engine)
    configured = list(labels) if labels is not None else None
    if declared is not None and configured is not None and declared != configured:
        raise ModelLoadError(
            f"Configured class labels {configured} do not match the order "
            f"{declared} the model at {path} was exported with"
        )
    resolved = configured if configured is not None else declared
    session.labels = tuple(resolved) if resolved is not None else None

    logger.info(
        "Loaded model session",
        path=str(path),
        input_name=session.input_name,
        output_name=session.output_name,
        providers=config.providers,
        graph_optimization=config.graph_optimization_level,
        memory_arena=config.memory_arena,
    )
    return session


def load_spec(
    spec: ModelSpec,
    config: SessionConfig | None = None,
    *,
    engine_factory: EngineFactory | None = None,
) -> ModelSession:
    return load(
        spec.path,
        config,
        spec.labels,
        input_name=spec.input_name,
        output_name=spec.output_name,
        engine_factory=engine_factory,
    )


class SessionCache:
    """Memoized sessions keyed by model spec and runtime configuration.

    Asking for a path with a different configuration than the one cached
    drops the stale entry before loading the new one. Failed loads are not
    cached.
    """

    def __init__(self, engine_factory: EngineFactory | None = None) -> None:
        self._engine_factory = engine_factory
        self._sessions: Dict[Tuple[ModelSpec, SessionConfig], ModelSession] = {}
        # Guards the dictionaries only; loads happen under the per-key lock.
        self._lock = threading.Lock()
        self._loading: Dict[Tuple[ModelSpec, SessionConfig], threading.Lock] = {}

    def get(self, spec: ModelSpec, config: SessionConfig | None = None) -> ModelSession:
        config = config or SessionConfig()
        key = (spec, config)
        with self._lock:
            session = self._sessions.get(key)
            if session is not None:
                return session
            key_lock = self._loading.setdefault(key, threading.Lock())

        with key_lock:
            with self._lock:
                session = self._sessions.get(key)
            if session is not None:
                return session
            try:
                session = load_spec(spec, config, engine_factory=self._engine_factory)
            except BaseException:
                with self._lock:
                    self._loading.pop(key, None)
                raise
            with self._lock:
                stale = [k for k in self._sessions if k[0].path == spec.path and k != key]
                for stale_key in stale:
                    logger.info(
                        "Invalidating cached session after configuration change", path=spec.path
                    )
                    del self._sessions[stale_key]
                self._sessions[key] = session
                self._loading.pop(key, None)
            return session

    def is_cached(self, spec: ModelSpec, config: SessionConfig | None = None) -> bool:
        with self._lock:
            return (spec, config or SessionConfig()) in self._sessions

    def invalidate(self, model_path: str | os.PathLike | None = None) -> int:
        """Drop cached sessions for ``model_path`` (all of them when omitted)."""
        with self._lock:
            if model_path is None:
                keys = list(self._sessions)
            else:
                target = str(model_path)
                keys = [k for k in self._sessions if k[0].path == target]
            for key in keys:
                del self._sessions[key]
        if keys:
            logger.info("Invalidated cached sessions", count=len(keys), path=model_path)
        return len(keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


_CACHE = SessionCache()


def default_cache() -> SessionCache:
    return _CACHE


__all__ = [
    "ModelSession",
    "ModelSpec",
    "SessionCache",
    "SessionConfig",
    "default_cache",
    "load",
    "load_spec",
]
