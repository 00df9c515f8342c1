#!/usr/bin/env python3
"""Classify a single MRI image with the configured ONNX model."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from btcs.config import settings
from btcs.services.errors import AnalysisFailed
from btcs.services.inference import InferenceOrchestrator
from btcs.services.session import ModelSpec, SessionConfig


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one MRI image through the tumor classifier.")
    parser.add_argument("--image", required=True, type=Path, help="Path to a JPEG/PNG/BMP scan.")
    parser.add_argument("--model", default=settings.model_path, help="Path to the ONNX artifact.")
    parser.add_argument(
        "--labels",
        default=",".join(settings.class_labels),
        help="Comma-separated class labels in the order the model was exported with.",
    )
    parser.add_argument(
        "--optimization",
        default=settings.graph_optimization_level,
        choices=["disable", "basic", "extended", "all"],
        help="ONNX Runtime graph optimization level.",
    )
    parser.add_argument("--no-memory-arena", action="store_true", help="Disable the CPU memory arena.")
    parser.add_argument("--json", action="store_true", help="Print the raw JSON result.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    spec = ModelSpec(
        path=args.model,
        labels=tuple(label.strip() for label in args.labels.split(",") if label.strip()),
        input_name=settings.input_name,
        output_name=settings.output_name,
    )
    config = SessionConfig(
        execution_backend=settings.execution_backend,
        graph_optimization_level=args.optimization,
        memory_arena=not args.no_memory_arena,
        intra_op_num_threads=settings.intra_op_num_threads,
    )
    orchestrator = InferenceOrchestrator(spec, config, stable_softmax=settings.stable_softmax)

    try:
        result = orchestrator.infer(args.image.read_bytes())
    except OSError as exc:
        print(f"Could not read {args.image}: {exc}", file=sys.stderr)
        return 1
    except AnalysisFailed as exc:
        print(f"Analysis failed during {exc.stage}: {exc.cause}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return 0
    print("Prediction:", result.prediction)
    print("Confidence:", round(result.confidence, 4))
    for label, probability in result.ranked():
        print(f"  {label:<12} {probability:.4f}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
