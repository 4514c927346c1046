"""
Services Package

Contains service layer classes for:
- Audio2Afan blendshape inference and animation export
"""

from services.audio2afan_service import (
    Audio2AfanService,
    GenerationResult,
    Profiler,
    get_audio2afan_service,
)

__all__ = [
    "Audio2AfanService",
    "GenerationResult",
    "Profiler",
    "get_audio2afan_service",
]
