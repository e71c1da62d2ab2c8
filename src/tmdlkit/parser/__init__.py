"""TMDL text loading, writing and structural validation."""

from tmdlkit.parser.loader import TmdlLoader
from tmdlkit.parser.validator import ModelValidator
from tmdlkit.parser.writer import TmdlWriter

__all__ = [
    "ModelValidator",
    "TmdlLoader",
    "TmdlWriter",
]
