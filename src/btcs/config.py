"""Configuration management for the BTCS backend."""
from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING, List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

if TYPE_CHECKING:
    from .services.session import ModelSpec, SessionConfig


class Settings(BaseSettings):
    environment: str = Field("development", alias="BTCS_ENV")
    cors_origins_raw: str = Field(
        "http://localhost:5173,http://localhost:3000", alias="CORS_ORIGINS"
    )
    model_path: str = Field("models/model.onnx", alias="BTCS_MODEL_PATH")
    class_labels_raw: str = Field(
        "Glioma,Meningioma,Pituitary,No Tumor", alias="BTCS_CLASS_LABELS"
    )
    input_name: str = Field("input", alias="BTCS_INPUT_NAME")
    output_name: Optional[str] = Field(None, alias="BTCS_OUTPUT_NAME")
    execution_backend: str = Field("cpu", alias="BTCS_EXECUTION_BACKEND")
    graph_optimization_level: Literal["disable", "basic", "extended", "all"] = Field(
        "all", alias="BTCS_GRAPH_OPTIMIZATION"
    )
    memory_arena: bool = Field(True, alias="BTCS_MEMORY_ARENA")
    intra_op_num_threads: int = Field(0, ge=0, alias="BTCS_INTRA_OP_THREADS")
    stable_softmax: bool = Field(True, alias="BTCS_STABLE_SOFTMAX")
    inference_timeout: Optional[float] = Field(None, gt=0, alias="BTCS_INFERENCE_TIMEOUT")
    log_level: str = Field("INFO", alias="BTCS_LOG_LEVEL")
    log_dir: Optional[str] = Field("logs", alias="BTCS_LOG_DIR")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        populate_by_name = True
        validate_assignment = True

    @field_validator("class_labels_raw")
    @classmethod
    def _check_labels(cls, value: str) -> str:
        labels = [label.strip() for label in value.split(",") if label.strip()]
        if not labels:
            raise ValueError("BTCS_CLASS_LABELS must name at least one class")
        if len(set(labels)) != len(labels):
            raise ValueError(f"BTCS_CLASS_LABELS contains duplicates: {labels}")
        return value

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins_raw.split(",") if origin]

    @property
    def class_labels(self) -> List[str]:
        return [label.strip() for label in self.class_labels_raw.split(",") if label.strip()]

    @property
    def session_config(self) -> "SessionConfig":
        from .services.session import SessionConfig

        return SessionConfig(
            execution_backend=self.execution_backend,
            graph_optimization_level=self.graph_optimization_level,
            memory_arena=self.memory_arena,
            intra_op_num_threads=self.intra_op_num_threads,
        )

    @property
    def model_spec(self) -> "ModelSpec":
        from .services.session import ModelSpec

        return ModelSpec(
            path=self.model_path,
            labels=tuple(self.class_labels),
            input_name=self.input_name,
            output_name=self.output_name,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


settings = get_settings()
