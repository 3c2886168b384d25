from facegate.quality import QualityAssessor
from facegate.types import EXPECTED_LANDMARKS, DetectedFace, QualityScore

FULL_LANDMARKS = {
    "left_eye": (30.0, 40.0),
    "right_eye": (70.0, 40.0),
    "nose": (50.0, 60.0),
    "mouth_left": (35.0, 80.0),
    "mouth_right": (65.0, 80.0),
}


def make_face(yaw=0.0, roll=0.0, landmarks=None) -> DetectedFace:
    return DetectedFace(
        bbox=(0.0, 0.0, 100.0, 100.0),
        landmarks=dict(FULL_LANDMARKS if landmarks is None else landmarks),
        yaw=yaw,
        roll=roll,
    )


def test_percentage_formula():
    score = QualityScore(blur=0.2, low_light=0.2, pose=0.2)
    assert score.percentage == 80
    assert QualityScore(blur=1.0, low_light=1.0, pose=1.0).percentage == 0
    assert QualityScore(blur=0.0, low_light=0.0, pose=0.0).percentage == 100


def test_pose_never_increases_quality():
    assessor = QualityAssessor(max_pose_angle=30.0)
    for landmarks in (FULL_LANDMARKS, {"left_eye": (30.0, 40.0)}, {}):
        previous = None
        for angle in [0.0, 5.0, 10.0, 20.0, 29.0, 30.0, 45.0, 90.0]:
            pct = assessor.assess(make_face(yaw=angle, landmarks=landmarks)).percentage
            if previous is not None:
                assert pct <= previous
            previous = pct


def test_pose_uses_yaw_and_roll_magnitudes():
    assessor = QualityAssessor(max_pose_angle=30.0)
    assert assessor.pose_score(make_face(yaw=-10.0, roll=5.0)) == 0.5
    assert assessor.pose_score(make_face(yaw=40.0)) == 1.0


def test_sparse_landmarks_degrade_blur_and_light():
    assessor = QualityAssessor()
    full = assessor.assess(make_face())
    empty = assessor.assess(make_face(landmarks={}))
    assert full.blur == 0.2 and full.low_light == 0.2
    assert abs(empty.blur - 0.8) < 1e-9
    assert abs(empty.low_light - 0.7) < 1e-9
    assert empty.percentage < full.percentage


def test_no_landmarks_and_strong_pose_gives_quarter_quality():
    assessor = QualityAssessor(max_pose_angle=30.0)
    score = assessor.assess(make_face(yaw=22.5, landmarks={}))
    assert score.percentage == 25


def test_expected_landmark_set_is_five_point():
    assert len(EXPECTED_LANDMARKS) == 5
    assert QualityAssessor().landmark_completeness(make_face()) == 1.0
