"""
Pydantic schemas package.
"""

from .probe import CommandRequest, MtrReportRequest, SystemInfo, HopSnapshot, MtrSnapshot
from .speedtest import UploadResponse, ErrorResponse, SpeedTestResult

__all__ = [
    # Probe
    "CommandRequest",
    "MtrReportRequest",
    "SystemInfo",
    "HopSnapshot",
    "MtrSnapshot",
    # Speed test
    "UploadResponse",
    "ErrorResponse",
    "SpeedTestResult",
]
