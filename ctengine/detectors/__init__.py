"""
Guideline detectors for the speculation analyzer.

Importing this package registers all four detectors:
- R1 SecretPathDetector: secret-dependent path selection
- R2 IndirectBranchDetector: indirect branch in a constant-time region
- R3 ConditionalScrubDetector: conditional scrub
- R4 GlobalStorageDetector: secret in global storage
"""

from .base import Detector, DetectorContext, DetectorRegistry
from .secret_path import SecretPathDetector
from .indirect_branch import IndirectBranchDetector
from .conditional_scrub import ConditionalScrubDetector
from .global_storage import GlobalStorageDetector

__all__ = [
    'Detector',
    'DetectorContext',
    'DetectorRegistry',
    'SecretPathDetector',
    'IndirectBranchDetector',
    'ConditionalScrubDetector',
    'GlobalStorageDetector',
]
