"""Endpoints for MRI image analysis."""
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status

from ..config import settings
from ..services import inference
from ..services.errors import AnalysisFailed, DecodeError, ModelLoadError

router = APIRouter()

_STATUS_BY_CAUSE = {
    DecodeError: 422,
    ModelLoadError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _status_for(error: AnalysisFailed) -> int:
    for cause_type, code in _STATUS_BY_CAUSE.items():
        if isinstance(error.cause, cause_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@router.post("/analyze", status_code=status.HTTP_200_OK)
async def analyze_scan(
    file: UploadFile = File(...),
    orchestrator: inference.InferenceOrchestrator = Depends(inference.get_orchestrator),
) -> dict:
    """Classify an uploaded MRI scan and return the ranked class probabilities."""
    image_bytes = await file.read()
    try:
        result = await orchestrator.infer_async(image_bytes, timeout=settings.inference_timeout)
    except AnalysisFailed as exc:
        raise HTTPException(status_code=_status_for(exc), detail=exc.to_dict()) from exc
    payload = result.to_dict()
    payload["ranked"] = [
        {"label": label, "confidence": probability} for label, probability in result.ranked()
    ]
    return payload


@router.get("/model", status_code=status.HTTP_200_OK)
async def describe_model(
    orchestrator: inference.InferenceOrchestrator = Depends(inference.get_orchestrator),
) -> dict:
    """Report which artifact and runtime settings the analyzer is bound to."""
    spec = orchestrator.spec
    config = orchestrator.config
    return {
        "model_path": spec.path,
        "labels": list(spec.labels),
        "session": {
            "execution_backend": config.execution_backend,
            "graph_optimization_level": config.graph_optimization_level,
            "memory_arena": config.memory_arena,
            "intra_op_num_threads": config.intra_op_num_threads,
        },
        "loaded": orchestrator.is_loaded(),
    }
