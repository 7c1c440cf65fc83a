"""
Pydantic schemas for the throughput test.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class UploadResponse(BaseModel):
    """Acknowledgement of one uploaded chunk."""

    success: bool = True
    bytes_received: int = Field(serialization_alias="bytesReceived")
    duration: float  # milliseconds

    model_config = ConfigDict(populate_by_name=True)


class ErrorResponse(BaseModel):
    """Error body returned by every failing endpoint."""

    error: str


class SpeedTestResult(BaseModel):
    """Outcome of one download-then-upload run, speeds in Mbps."""

    size: str
    download_mbps: Optional[float] = None
    upload_mbps: Optional[float] = None
    error_category: Optional[str] = None  # network, timeout or cancelled
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_category is None
