"""SOPS integration: content detection and the CLI runner."""

from .detector import SopsDetector
from .runner import SopsRunner, classify_failure, input_type_for

__all__ = ["SopsDetector", "SopsRunner", "classify_failure", "input_type_for"]
