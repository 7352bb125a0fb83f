"""
Pytest configuration and fixtures for TrafficLens tests.
"""

import pytest
import sys
import time
from pathlib import Path

import numpy as np

# Add backend to path for imports
backend_path = Path(__file__).parent.parent / "backend"
sys.path.insert(0, str(backend_path))


@pytest.fixture
def sample_result_payload():
    """Well-formed analysis result as the model would return it."""
    return {
        "vehicleCount": 12,
        "trafficDensity": "Moderate",
        "averageSpeed": 42.5,
        "congestionLevel": 35,
        "detectedVehicles": [
            {"type": "Car", "count": 9, "confidence": 0.92},
            {"type": "Truck", "count": 2, "confidence": 0.81},
            {"type": "Motorcycle", "count": 1, "confidence": 0.66},
        ],
        "flowRate": 18.4,
        "anomalies": ["Vehicle stopped in right lane"],
        "processingQuality": "High",
        "insights": [
            "Traffic flows steadily in both directions",
            "Heavier volume in the northbound lanes",
        ],
    }


@pytest.fixture
def gemini_success_body():
    """Build a generateContent response body wrapping ``text``."""
    def _build(text):
        return {
            "candidates": [
                {
                    "content": {"parts": [{"text": text}], "role": "model"},
                    "finishReason": "STOP",
                }
            ]
        }
    return _build


class FakeVideo:
    """In-memory VideoResource producing solid-color pictures."""

    def __init__(self, duration=10.0, width=64, height=48, fail_at=None, seek_ok=True,
                 read_delay=0.0):
        self._duration = duration
        self._width = width
        self._height = height
        self.fail_at = fail_at  # index of the read that returns None
        self.seek_ok = seek_ok
        self.read_delay = read_delay
        self.reading = False
        self.seeks = []
        self.reads = 0
        self.released = False

    @property
    def duration(self):
        return self._duration

    @property
    def width(self):
        return self._width

    @property
    def height(self):
        return self._height

    def seek(self, seconds):
        self.seeks.append(seconds)
        return self.seek_ok

    def read(self):
        self.reading = True
        if self.read_delay:
            time.sleep(self.read_delay)
        self.reading = False
        index = self.reads
        self.reads += 1
        if self.fail_at is not None and index == self.fail_at:
            return None
        shade = (index * 40) % 256
        return np.full((self._height, self._width, 3), shade, dtype=np.uint8)


@pytest.fixture
def fake_video_factory():
    """Create FakeVideo instances registered as VideoResource subclasses."""
    from models.pipeline import VideoResource

    VideoResource.register(FakeVideo)

    def _make(**kwargs):
        return FakeVideo(**kwargs)
    return _make
