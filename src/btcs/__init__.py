"""BTCS: local MRI brain tumor classification on an ONNX model."""

__version__ = "0.1.0"
