"""End-to-end analysis of a single uploaded MRI image."""
from __future__ import annotations

import asyncio
from functools import lru_cache
from typing import Optional

from ..config import settings
from ..utils.logger import get_logger
from . import postprocess, preprocess
from . import session as session_service
from .errors import AnalysisFailed, InferenceError
from .postprocess import ClassificationResult
from .preprocess import ImageInput
from .session import ModelSession, ModelSpec, SessionCache, SessionConfig

logger = get_logger(__name__)


class InferenceOrchestrator:
    """Runs encode -> forward pass -> decision and reports one failure type.

    Nothing is kept between calls apart from the sessions held by the
    session cache, so concurrent calls do not share buffers.
    """

    def __init__(
        self,
        spec: ModelSpec,
        config: SessionConfig | None = None,
        *,
        cache: SessionCache | None = None,
        stable_softmax: bool = True,
    ) -> None:
        self.spec = spec
        self.config = config or SessionConfig()
        self.stable_softmax = stable_softmax
        self._cache = cache if cache is not None else session_service.default_cache()

    def session(self) -> ModelSession:
        return self._cache.get(self.spec, self.config)

    def is_loaded(self) -> bool:
        return self._cache.is_cached(self.spec, self.config)

    def infer(self, image: ImageInput) -> ClassificationResult:
        stage = "preprocessing"
        try:
            tensor = preprocess.encode(image)
            stage = "loading"
            model = self.session()
            stage = "running"
            logits = model.run(tensor)
            stage = "postprocessing"
            result = postprocess.decide(
                logits,
                model.labels or self.spec.labels,
                stable=self.stable_softmax,
            )
        except Exception as exc:
            logger.error(
                "Analysis failed",
                stage=stage,
                error=type(exc).__name__,
                detail=str(exc),
            )
            raise AnalysisFailed(stage, exc) from exc

        logger.info(
            "Analysis complete",
            prediction=result.prediction,
            confidence=round(result.confidence, 4),
        )
        return result

    async def infer_async(
        self, image: ImageInput, timeout: Optional[float] = None
    ) -> ClassificationResult:
        """Run :meth:`infer` in a worker thread, optionally bounded by ``timeout``.

        On timeout the worker is left to finish in the background and its
        result is dropped.
        """
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.infer, image), timeout)
        except asyncio.TimeoutError as exc:
            cause = InferenceError(f"Inference timed out after {timeout} seconds")
            logger.error("Analysis timed out", timeout=timeout)
            raise AnalysisFailed("running", cause) from exc


class LatestRequestGate:
    """Keeps only the newest submission's outcome.

    When a request is superseded by a later :meth:`submit` call before it
    finishes, its result (or failure) is discarded and ``None`` is returned.
    """

    def __init__(self, orchestrator: InferenceOrchestrator, timeout: Optional[float] = None) -> None:
        self._orchestrator = orchestrator
        self._timeout = timeout
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    async def submit(self, image: ImageInput) -> Optional[ClassificationResult]:
        self._generation += 1
        ticket = self._generation
        try:
            result = await self._orchestrator.infer_async(image, timeout=self._timeout)
        except AnalysisFailed:
            if ticket != self._generation:
                logger.info("Discarding failure of superseded request", ticket=ticket)
                return None
            raise
        if ticket != self._generation:
            logger.info("Discarding result of superseded request", ticket=ticket)
            return None
        return result


@lru_cache(maxsize=1)
def get_orchestrator() -> InferenceOrchestrator:
    return InferenceOrchestrator(
        settings.model_spec,
        settings.session_config,
        stable_softmax=settings.stable_softmax,
    )


__all__ = ["InferenceOrchestrator", "LatestRequestGate", "get_orchestrator"]
