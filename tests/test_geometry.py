from facegate.detectors.dedup import select_largest, suppress
from facegate.types import DetectedFace, bbox_contains, iou


def make_face(bbox, **kwargs) -> DetectedFace:
    return DetectedFace(bbox=bbox, **kwargs)


def test_iou_identical_boxes_is_one():
    box = (10.0, 10.0, 50.0, 60.0)
    assert iou(box, box) == 1.0


def test_iou_disjoint_boxes_is_zero():
    assert iou((0.0, 0.0, 10.0, 10.0), (20.0, 20.0, 30.0, 30.0)) == 0.0


def test_iou_zero_area_box_is_zero():
    point_box = (5.0, 5.0, 5.0, 5.0)
    assert iou(point_box, point_box) == 0.0
    assert iou(point_box, (0.0, 0.0, 10.0, 10.0)) == 0.0


def test_iou_is_symmetric_and_partial():
    a = (0.0, 0.0, 10.0, 10.0)
    b = (5.0, 0.0, 15.0, 10.0)
    assert abs(iou(a, b) - 50.0 / 150.0) < 1e-9
    assert iou(a, b) == iou(b, a)


def test_suppress_keeps_first_seen_of_overlapping_pair():
    first = make_face((0.0, 0.0, 100.0, 100.0), score=0.7)
    duplicate = make_face((5.0, 5.0, 105.0, 105.0), score=0.99)
    other = make_face((300.0, 300.0, 380.0, 380.0))

    kept = suppress([first, duplicate, other], iou_threshold=0.3)

    assert kept == [first, other]


def test_suppress_is_stable_on_deduplicated_input():
    faces = [
        make_face((0.0, 0.0, 50.0, 50.0)),
        make_face((60.0, 0.0, 110.0, 50.0)),
        make_face((0.0, 60.0, 50.0, 110.0)),
    ]
    once = suppress(faces, 0.3)
    assert once == faces
    assert suppress(once, 0.3) == once


def test_suppress_threshold_is_strict():
    a = make_face((0.0, 0.0, 10.0, 10.0))
    b = make_face((5.0, 0.0, 15.0, 10.0))  # IoU = 1/3
    assert len(suppress([a, b], iou_threshold=1.0 / 3.0)) == 2
    assert len(suppress([a, b], iou_threshold=0.3)) == 1


def test_suppress_handles_degenerate_boxes():
    degenerate = make_face((10.0, 10.0, 10.0, 10.0))
    same = make_face((10.0, 10.0, 10.0, 10.0))
    assert suppress([degenerate, same], 0.3) == [degenerate, same]


def test_select_largest_prefers_area_then_order():
    small = make_face((0.0, 0.0, 10.0, 10.0))
    big = make_face((0.0, 0.0, 40.0, 40.0))
    big_twin = make_face((100.0, 100.0, 140.0, 140.0))
    assert select_largest([small, big, big_twin]) is big
    assert select_largest([]) is None


def test_bbox_contains_edges():
    box = (0.0, 0.0, 10.0, 10.0)
    assert bbox_contains(box, (0.0, 10.0))
    assert not bbox_contains(box, (10.5, 5.0))
