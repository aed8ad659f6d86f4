"""
bandwidth/__init__.py

Public API for the bandwidth sub-package.
"""

from .parser import SamplerLine, SamplerOutputParser, parse_line
from .supervisor import BandwidthSupervisor, CleanupResult, SupervisorState

__all__ = [
    "BandwidthSupervisor",
    "CleanupResult",
    "SupervisorState",
    "SamplerLine",
    "SamplerOutputParser",
    "parse_line",
]
