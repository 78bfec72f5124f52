"""
Tests for detection parsing, geolocation and the LLM-backed detector.
"""

import json

import pytest

from analyzer import (
    DetectedFeature,
    DetectionError,
    FeatureDetector,
    confidence_to_number,
    encode_image_bytes_as_data_url,
    extract_json,
    locate_feature,
    parse_detection_payload,
)
from geom.tile_math import BoundingBox
from conftest import FakeLLM

TILE_BOX = BoundingBox(north=39.0, south=38.0, east=-89.0, west=-90.0)


def _feature(x=0.5, y=0.5, level="high", kind="mound") -> DetectedFeature:
    return DetectedFeature(kind=kind, confidence_level=level, x=x, y=y)


class TestConfidenceMapping:
    """Tests for categorical to numeric confidence."""

    def test_fixed_values(self) -> None:
        assert confidence_to_number("high") == 0.85
        assert confidence_to_number("medium") == 0.60
        assert confidence_to_number("low") == 0.35

    def test_deterministic_and_case_insensitive(self) -> None:
        assert confidence_to_number("HIGH") == confidence_to_number("high")

    def test_unknown_level(self) -> None:
        with pytest.raises(ValueError):
            confidence_to_number("certain")


class TestLocateFeature:
    """Tests for image-relative to geographic coordinates."""

    def test_corners(self) -> None:
        assert locate_feature(_feature(0, 0), TILE_BOX) == (39.0, -90.0)
        assert locate_feature(_feature(1, 1), TILE_BOX) == (38.0, -89.0)

    def test_center(self) -> None:
        lat, lng = locate_feature(_feature(0.5, 0.25), TILE_BOX)
        assert lat == pytest.approx(38.75)
        assert lng == pytest.approx(-89.5)


class TestParsing:
    """Tests for turning the model's JSON into features."""

    def test_extract_json_direct_and_embedded(self) -> None:
        assert extract_json('{"features": []}') == {"features": []}
        assert extract_json('Sure! {"features": []} hope that helps') == {"features": []}
        assert extract_json("no json here") is None

    def test_parse_full_payload(self) -> None:
        payload = {
            "features": [
                {"type": "mound", "confidence": "medium", "location": {"x": 0.3, "y": 0.6},
                 "sizeMeters": 25, "description": "Circular rise"},
            ],
            "overallAssessment": "One candidate mound.",
        }
        features, rationale = parse_detection_payload(payload)
        assert rationale == "One candidate mound."
        assert len(features) == 1
        f = features[0]
        assert (f.kind, f.confidence_level, f.x, f.y, f.size_meters) == ("mound", "medium", 0.3, 0.6, 25.0)
        assert f.confidence == 0.60

    def test_unknown_confidence_dropped(self) -> None:
        payload = {"features": [
            {"type": "mound", "confidence": "very high", "location": {"x": 0.1, "y": 0.1}},
            {"type": "earthwork", "confidence": "low", "location": {"x": 0.2, "y": 0.2}},
        ]}
        features, _ = parse_detection_payload(payload)
        assert [f.kind for f in features] == ["earthwork"]

    def test_positions_clamped_and_unknown_type(self) -> None:
        payload = {"features": [{"type": "pyramid", "confidence": "high", "location": {"x": 1.4, "y": -0.2}}]}
        features, _ = parse_detection_payload(payload)
        assert (features[0].kind, features[0].x, features[0].y) == ("other", 1.0, 0.0)

    def test_missing_location_dropped(self) -> None:
        features, _ = parse_detection_payload({"features": [{"type": "mound", "confidence": "high"}]})
        assert features == []

    @pytest.mark.parametrize("payload", [[], {"features": "none"}, "text"])
    def test_bad_shape(self, payload) -> None:
        with pytest.raises(DetectionError):
            parse_detection_payload(payload)


class TestFeatureDetector:
    """Tests for the LLM-backed detector with a fake chat model."""

    def test_detect(self, jpeg_bytes) -> None:
        reply = json.dumps({
            "features": [{"type": "cropmark", "confidence": "high", "location": {"x": 0.5, "y": 0.5},
                          "sizeMeters": 40, "description": "Ring ditch"}],
            "overallAssessment": "Possible ring ditch.",
        })
        llm = FakeLLM(reply)
        result = FeatureDetector(llm, model_id="test/model", max_retries=0).detect(jpeg_bytes)
        assert result.model_id == "test/model"
        assert result.rationale == "Possible ring ditch."
        assert [f.kind for f in result.features] == ["cropmark"]
        assert result.processing_time >= 0

        system, human = llm.calls[0]
        assert "JSON" in system.content
        assert human.content[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")

    def test_unparseable_answer(self, jpeg_bytes) -> None:
        detector = FeatureDetector(FakeLLM("I could not see anything."), max_retries=0)
        with pytest.raises(DetectionError):
            detector.detect(jpeg_bytes)

    def test_llm_failure_after_retries(self, jpeg_bytes) -> None:
        detector = FeatureDetector(FakeLLM(RuntimeError("503")), max_retries=0)
        with pytest.raises(DetectionError, match="503"):
            detector.detect(jpeg_bytes)

    def test_retries_with_backoff_then_succeeds(self, jpeg_bytes) -> None:
        slept = []
        llm = FakeLLM(RuntimeError("429"), RuntimeError("502"), '{"features": [], "overallAssessment": "Nothing."}')
        result = FeatureDetector(llm, max_retries=2, sleep=slept.append).detect(jpeg_bytes)
        assert result.rationale == "Nothing."
        assert len(llm.calls) == 3
        assert slept == [1, 2]

    def test_gives_up_after_max_retries(self, jpeg_bytes) -> None:
        slept = []
        llm = FakeLLM(RuntimeError("503"))
        with pytest.raises(DetectionError, match="RuntimeError: 503"):
            FeatureDetector(llm, max_retries=2, sleep=slept.append).detect(jpeg_bytes)
        assert len(llm.calls) == 3
        assert slept == [1, 2]

    def test_undecodable_image(self) -> None:
        with pytest.raises(DetectionError):
            encode_image_bytes_as_data_url(b"<ServiceException/>")

    def test_from_env_requires_key(self, monkeypatch) -> None:
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        with pytest.raises(RuntimeError):
            FeatureDetector.from_env()
