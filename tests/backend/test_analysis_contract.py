"""
Tests for the analysis result contract.
"""

import json

import pytest
from pydantic import ValidationError


class TestAnalysisResultValidation:
    """Tests for parse_analysis_result"""

    def test_accepts_complete_payload(self, sample_result_payload):
        """Should build a typed result from a complete payload"""
        from models.analysis import parse_analysis_result

        result = parse_analysis_result(sample_result_payload)

        assert result.vehicleCount == 12
        assert result.trafficDensity == "Moderate"
        assert result.averageSpeed == 42.5
        assert result.congestionLevel == 35
        assert result.detectedVehicles[0].type == "Car"
        assert result.total_detected == 12
        assert result.processingQuality == "High"

    def test_ignores_unknown_fields(self, sample_result_payload):
        """Should drop keys that are not part of the contract"""
        from models.analysis import parse_analysis_result

        sample_result_payload["enhancedFrames"] = 5
        result = parse_analysis_result(sample_result_payload)

        assert "enhancedFrames" not in result.model_dump()

    @pytest.mark.parametrize("field", [
        "vehicleCount", "trafficDensity", "averageSpeed", "congestionLevel",
        "detectedVehicles", "flowRate", "anomalies", "processingQuality", "insights",
    ])
    def test_rejects_missing_field(self, sample_result_payload, field):
        """Should reject the whole result when any field is missing"""
        from models.analysis import parse_analysis_result

        del sample_result_payload[field]

        with pytest.raises(ValidationError):
            parse_analysis_result(sample_result_payload)

    @pytest.mark.parametrize("field,value", [
        ("vehicleCount", -1),
        ("vehicleCount", 3.5),
        ("vehicleCount", "12"),
        ("vehicleCount", True),
        ("averageSpeed", -4),
        ("averageSpeed", "fast"),
        ("congestionLevel", 101),
        ("congestionLevel", -0.1),
        ("flowRate", None),
        ("trafficDensity", "Gridlock"),
        ("processingQuality", "Ultra"),
        ("anomalies", "none"),
        ("anomalies", [1, 2]),
        ("insights", None),
    ])
    def test_rejects_bad_values(self, sample_result_payload, field, value):
        """Should reject wrong types, out-of-range numbers and unknown enum values"""
        from models.analysis import parse_analysis_result

        sample_result_payload[field] = value

        with pytest.raises(ValidationError):
            parse_analysis_result(sample_result_payload)

    @pytest.mark.parametrize("detection", [
        {"type": "Spaceship", "count": 1, "confidence": 0.5},
        {"type": "Car", "count": -2, "confidence": 0.5},
        {"type": "Car", "count": 2, "confidence": 1.5},
        {"type": "Car", "count": 2},
    ])
    def test_rejects_bad_detection(self, sample_result_payload, detection):
        """Should reject the result when one detection tally is malformed"""
        from models.analysis import parse_analysis_result

        sample_result_payload["detectedVehicles"].append(detection)

        with pytest.raises(ValidationError):
            parse_analysis_result(sample_result_payload)

    @pytest.mark.parametrize("value", [None, [], "text", 42])
    def test_rejects_non_object(self, value):
        """Should reject anything that is not a JSON object"""
        from models.analysis import parse_analysis_result

        with pytest.raises(ValidationError):
            parse_analysis_result(value)

    def test_validation_is_idempotent(self, sample_result_payload):
        """Re-serializing and re-validating should yield an identical result"""
        from models.analysis import parse_analysis_result

        first = parse_analysis_result(sample_result_payload)
        second = parse_analysis_result(json.loads(json.dumps(first.model_dump(mode="json"))))

        assert second == first
        assert second.model_dump() == first.model_dump()

    def test_accepts_empty_lists(self, sample_result_payload):
        """Empty tallies, anomalies and insights are valid"""
        from models.analysis import parse_analysis_result

        sample_result_payload.update(detectedVehicles=[], anomalies=[], insights=[], vehicleCount=0)
        result = parse_analysis_result(sample_result_payload)

        assert result.total_detected == 0
