import numpy as np
import pytest

from facegate.config import DEFAULT_SPOOF_WEIGHTS, PipelineConfig
from facegate.liveness.spoof import NEUTRAL_SCORE, SpoofScorer, combine_scores, crop_region, to_gray
from facegate.types import DetectedFace, RiskLevel

FULL_LANDMARKS = {
    "left_eye": (30.0, 40.0),
    "right_eye": (70.0, 40.0),
    "nose": (50.0, 60.0),
    "mouth_left": (35.0, 80.0),
    "mouth_right": (65.0, 80.0),
}


def make_face(landmarks=None, tracking_id=None) -> DetectedFace:
    return DetectedFace(
        bbox=(0.0, 0.0, 100.0, 100.0),
        landmarks=dict(FULL_LANDMARKS if landmarks is None else landmarks),
        tracking_id=tracking_id,
    )


def test_uniformly_high_components_are_spoofed():
    scorer = SpoofScorer()
    verdict = scorer.verdict({name: 0.9 for name in DEFAULT_SPOOF_WEIGHTS})
    assert verdict.risk_score == pytest.approx(0.9)
    assert verdict.is_spoofed
    assert verdict.risk_level is RiskLevel.CRITICAL
    assert verdict.recommendation.startswith("REJECTED")


def test_combine_renormalizes_over_present_components():
    assert combine_scores({"texture": 0.8, "motion": 0.2}) == pytest.approx((0.8 * 0.3 + 0.2 * 0.1) / 0.4)
    assert combine_scores({}) == NEUTRAL_SCORE
    assert combine_scores({"unknown": 1.0}) == NEUTRAL_SCORE


def test_risk_level_buckets():
    assert RiskLevel.from_score(0.1) is RiskLevel.SAFE
    assert RiskLevel.from_score(0.2) is RiskLevel.LOW
    assert RiskLevel.from_score(0.45) is RiskLevel.MEDIUM
    assert RiskLevel.from_score(0.6) is RiskLevel.HIGH
    assert RiskLevel.from_score(0.95) is RiskLevel.CRITICAL


def test_missing_pixels_fall_back_to_neutral():
    scorer = SpoofScorer()
    verdict = scorer.score(make_face(tracking_id=1), None, 0, 0)
    assert verdict.components["texture"] == NEUTRAL_SCORE
    assert verdict.components["frequency"] == NEUTRAL_SCORE
    assert verdict.components["landmarks"] == 0.2


def test_short_buffer_falls_back_to_neutral():
    assert to_gray(bytes(10), 20, 20) is None
    scorer = SpoofScorer()
    verdict = scorer.score(make_face(), bytes(10), 20, 20)
    assert verdict.components["texture"] == NEUTRAL_SCORE


def test_signed_byte_sequence_is_accepted():
    gray = to_gray([-1, 0, 127, -128], 2, 2)
    assert gray.tolist() == [[255, 0], [127, 128]]


def test_tiny_region_is_skipped():
    gray = np.zeros((50, 50), dtype=np.uint8)
    face = DetectedFace(bbox=(10.0, 10.0, 12.0, 40.0))
    assert crop_region(gray, face) is None


def test_flat_image_scores_print_like():
    scorer = SpoofScorer()
    flat = np.full((100, 100), 128, dtype=np.uint8)
    region = crop_region(flat, make_face())
    assert scorer.texture_score(region) == pytest.approx(1.0)
    assert scorer.frequency_score(region) == pytest.approx(1.0)


def test_live_looking_face_is_accepted():
    rng = np.random.default_rng(0)
    noise = rng.integers(0, 256, size=(100, 100, 3), dtype=np.uint8)
    verdict = SpoofScorer().score(make_face(tracking_id=4), noise, 100, 100)
    assert not verdict.is_spoofed
    assert verdict.risk_score < 0.2
    assert verdict.recommendation.startswith("ACCEPTED")


def test_flat_face_is_rejected():
    flat = np.full((100, 100), 128, dtype=np.uint8)
    verdict = SpoofScorer().score(make_face(tracking_id=4), flat, 100, 100)
    assert verdict.is_spoofed


def test_missing_landmarks_and_eyes_score_high():
    scorer = SpoofScorer()
    face = make_face(landmarks={"nose": (50.0, 60.0)})
    assert scorer.landmark_score(face) == 0.7
    assert scorer.eye_reflection_score(face) == 0.8
    assert scorer.motion_score(face) == NEUTRAL_SCORE


def test_out_of_box_landmarks_are_suspicious():
    landmarks = dict(FULL_LANDMARKS, nose=(250.0, 60.0))
    assert SpoofScorer().landmark_score(make_face(landmarks=landmarks)) == 0.7


def test_failing_analysis_is_neutral():
    class BrokenScorer(SpoofScorer):
        def motion_score(self, face):
            raise RuntimeError("tracker gone")

    verdict = BrokenScorer().score(make_face(), None, 0, 0)
    assert verdict.components["motion"] == NEUTRAL_SCORE


def test_enabled_components_subset():
    scorer = SpoofScorer(enabled_components=["landmarks", "motion"])
    verdict = scorer.score(make_face(tracking_id=1), None, 0, 0)
    assert set(verdict.components) == {"landmarks", "motion"}
    with pytest.raises(ValueError):
        SpoofScorer(enabled_components=["depth"])


def test_from_config_uses_threshold_and_weights():
    config = PipelineConfig(spoof_threshold=0.95, spoof_weights={"texture": 1.0})
    scorer = SpoofScorer.from_config(config)
    assert scorer.threshold == 0.95
    assert not scorer.verdict({"texture": 0.9}).is_spoofed


def test_unusable_pixels_or_box_stay_neutral():
    scorer = SpoofScorer()
    verdict = scorer.score(make_face(), ["not", "pixels"], 2, 1)
    assert verdict.components["texture"] == NEUTRAL_SCORE
    assert verdict.components["frequency"] == NEUTRAL_SCORE

    runaway = DetectedFace(bbox=(0.0, 0.0, float("inf"), float("nan")), landmarks=dict(FULL_LANDMARKS))
    flat = np.full((100, 100), 128, dtype=np.uint8)
    verdict = scorer.score(runaway, flat, 100, 100)
    assert verdict.components["texture"] == NEUTRAL_SCORE
    assert verdict.components["frequency"] == NEUTRAL_SCORE
