"""
Core package init for facegate.

Camera-frame identity verification: detection, quality gating, embedding
matching and presentation-attack scoring for attendance marking.
"""

__version__ = "0.1.0"

__all__ = [
    "config",
    "detectors",
    "io_utils",
    "liveness",
    "pipeline",
    "quality",
    "recognition",
    "tracking",
    "types",
]
