# backend/models/analysis.py
"""
Traffic analysis result contract.

The shape the remote model is asked to return, and the only shape the rest
of the system accepts. Validation is all-or-nothing: a missing field, a
wrong type or an out-of-range value rejects the whole object.
"""

import math
from typing import Any, List, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator


TrafficDensity = Literal["Light", "Moderate", "Heavy", "Congested"]
ProcessingQuality = Literal["Low", "Medium", "High"]
VehicleType = Literal["Car", "Truck", "Bus", "Motorcycle"]


def _require_number(value: Any) -> Any:
    """Reject strings, booleans and non-finite floats before range checks"""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"expected a number, got {type(value).__name__}")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError("expected a finite number")
    return value


class VehicleDetection(BaseModel):
    """Tally of one vehicle type across the sampled frames"""

    model_config = ConfigDict(extra="ignore", frozen=True)

    type: VehicleType
    count: StrictInt = Field(ge=0)
    confidence: float = Field(ge=0.0, le=1.0)

    @field_validator("confidence", mode="before")
    @classmethod
    def check_number(cls, v):
        return _require_number(v)


class AnalysisResult(BaseModel):
    """Validated traffic analysis produced from the model's reply"""

    model_config = ConfigDict(extra="ignore", frozen=True)

    vehicleCount: StrictInt = Field(ge=0)
    trafficDensity: TrafficDensity
    averageSpeed: float = Field(ge=0.0)
    congestionLevel: float = Field(ge=0.0, le=100.0)
    detectedVehicles: List[VehicleDetection]
    flowRate: float = Field(ge=0.0)
    anomalies: List[StrictStr]
    processingQuality: ProcessingQuality
    insights: List[StrictStr]

    @field_validator("averageSpeed", "congestionLevel", "flowRate", mode="before")
    @classmethod
    def check_number(cls, v):
        return _require_number(v)

    @property
    def total_detected(self) -> int:
        """Sum of per-type tallies"""
        return sum(d.count for d in self.detectedVehicles)


def parse_analysis_result(data: Any) -> AnalysisResult:
    """
    Validate a decoded JSON value against the result contract.

    Raises:
        pydantic.ValidationError: If any field is missing, mistyped or out of range
    """
    return AnalysisResult.model_validate(data)
