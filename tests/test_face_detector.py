"""Tests for the RetinaFace detector decoding."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import numpy as np
import pytest

from facepass.ml.face_detector import RetinaFaceDetector, nms, prior_boxes

_NUM_PRIORS_320 = 4200
# Stride-32 anchor at row 5, col 5 with min size 256: centre (176, 176) in a 320 input.
_ANCHOR = 4000 + (5 * 10 + 5) * 2


def _outputs(hits: dict[int, float], order: str = "loc-conf-landms") -> list[np.ndarray]:
    loc = np.zeros((1, _NUM_PRIORS_320, 4), dtype=np.float32)
    conf = np.zeros((1, _NUM_PRIORS_320, 2), dtype=np.float32)
    conf[0, :, 1] = 0.05
    for index, score in hits.items():
        conf[0, index, 1] = score
    conf[0, :, 0] = 1.0 - conf[0, :, 1]
    landms = np.zeros((1, _NUM_PRIORS_320, 10), dtype=np.float32)
    by_name = {"loc": loc, "conf": conf, "landms": landms}
    return [by_name[name] for name in order.split("-")]


def _session(outputs: list[np.ndarray]) -> MagicMock:
    session = MagicMock()
    session.get_inputs.return_value = [SimpleNamespace(name="input", shape=[1, 3, "h", "w"])]
    session.run.return_value = outputs
    return session


class TestPriorBoxes:
    def test_count_for_320(self) -> None:
        assert prior_boxes(320).shape == (_NUM_PRIORS_320, 4)

    def test_first_prior(self) -> None:
        first = prior_boxes(320)[0]
        np.testing.assert_allclose(first, [4 / 320, 4 / 320, 16 / 320, 16 / 320])

    def test_count_for_non_multiple_size(self) -> None:
        # ceil(100/8)=13, ceil(100/16)=7, ceil(100/32)=4
        assert len(prior_boxes(100)) == (13 * 13 + 7 * 7 + 4 * 4) * 2


class TestNms:
    def test_suppresses_overlap(self) -> None:
        boxes = np.array([[0, 0, 10, 10], [1, 1, 10, 10], [20, 20, 30, 30]], dtype=np.float32)
        scores = np.array([0.9, 0.8, 0.7], dtype=np.float32)
        assert nms(boxes, scores, 0.4).tolist() == [0, 2]

    def test_orders_by_score(self) -> None:
        boxes = np.array([[0, 0, 10, 10], [20, 20, 30, 30]], dtype=np.float32)
        scores = np.array([0.5, 0.9], dtype=np.float32)
        assert nms(boxes, scores, 0.4).tolist() == [1, 0]

    def test_empty(self) -> None:
        assert nms(np.zeros((0, 4), dtype=np.float32), np.zeros(0, dtype=np.float32), 0.4).size == 0


class TestRetinaFaceDetector:
    def test_decodes_single_face(self) -> None:
        session = _session(_outputs({_ANCHOR: 0.9}))
        detector = RetinaFaceDetector(session, "retinaface_mobilenetv2")

        detections = detector.detect(np.zeros((320, 320, 3), dtype=np.uint8))

        assert len(detections) == 1
        det = detections[0]
        np.testing.assert_allclose(det.bbox, [48, 48, 304, 304], atol=1e-3)
        assert det.score == pytest.approx(0.9)
        assert det.landmarks.shape == (5, 2)
        np.testing.assert_allclose(det.landmarks, np.full((5, 2), 176.0), atol=1e-3)

    def test_feeds_bgr_mean_subtracted_tensor(self) -> None:
        session = _session(_outputs({}))
        detector = RetinaFaceDetector(session, "retinaface_mobilenetv2")
        image = np.zeros((100, 200, 3), dtype=np.uint8)
        image[:, :, 0] = 200  # red

        detector.detect(image)

        feed = session.run.call_args.args[1]
        tensor = feed["input"]
        assert tensor.shape == (1, 3, 320, 320)
        # Channel 2 is red in BGR order; padding stays at -mean.
        assert tensor[0, 2, 0, 0] == pytest.approx(200 - 123)
        assert tensor[0, 0, 0, 0] == pytest.approx(-104)
        assert tensor[0, 2, 200, 0] == pytest.approx(-123)

    def test_no_detection_below_threshold(self) -> None:
        detector = RetinaFaceDetector(_session(_outputs({_ANCHOR: 0.3})), "retinaface_mobilenetv2")
        assert detector.detect(np.zeros((320, 320, 3), dtype=np.uint8)) == []

    def test_threshold_is_configurable(self) -> None:
        session = _session(_outputs({_ANCHOR: 0.3}))
        detector = RetinaFaceDetector(session, "retinaface_mobilenetv2", score_threshold=0.25)
        assert len(detector.detect(np.zeros((320, 320, 3), dtype=np.uint8))) == 1

    def test_boxes_clipped_to_image(self) -> None:
        detector = RetinaFaceDetector(_session(_outputs({_ANCHOR: 0.9})), "retinaface_mobilenetv2")

        det = detector.detect(np.zeros((200, 240, 3), dtype=np.uint8))[0]

        np.testing.assert_allclose(det.bbox, [48, 48, 240, 200], atol=1e-3)

    def test_output_order_does_not_matter(self) -> None:
        session = _session(_outputs({_ANCHOR: 0.9}, order="landms-conf-loc"))
        detector = RetinaFaceDetector(session, "retinaface_mobilenetv2")
        assert len(detector.detect(np.zeros((320, 320, 3), dtype=np.uint8))) == 1

    def test_logits_are_softmaxed(self) -> None:
        outputs = _outputs({})
        conf = outputs[1]
        conf[0, :, 0] = 4.0
        conf[0, :, 1] = -4.0
        conf[0, _ANCHOR] = [-4.0, 4.0]
        detector = RetinaFaceDetector(_session(outputs), "retinaface_mobilenetv2", scores_are_logits=True)

        detections = detector.detect(np.zeros((320, 320, 3), dtype=np.uint8))

        assert len(detections) == 1
        assert detections[0].score == pytest.approx(1 / (1 + np.exp(-8.0)), rel=1e-4)

    def test_logits_in_unit_range_are_softmaxed(self) -> None:
        outputs = _outputs({})
        conf = outputs[1]
        conf[0, :] = [0.9, 0.1]
        conf[0, _ANCHOR] = [0.0, 1.0]
        detector = RetinaFaceDetector(_session(outputs), "retinaface_mobilenetv2", scores_are_logits=True)

        detections = detector.detect(np.zeros((320, 320, 3), dtype=np.uint8))

        assert len(detections) == 1
        assert detections[0].score == pytest.approx(1 / (1 + np.exp(-1.0)), rel=1e-4)

    def test_probabilities_read_as_is(self) -> None:
        outputs = _outputs({})
        conf = outputs[1]
        conf[0, :] = [0.9, 0.1]
        conf[0, _ANCHOR] = [0.0, 1.0]
        detector = RetinaFaceDetector(_session(outputs), "retinaface_mobilenetv2")

        detections = detector.detect(np.zeros((320, 320, 3), dtype=np.uint8))

        assert len(detections) == 1
        assert detections[0].score == pytest.approx(1.0)

    def test_anchor_count_mismatch_raises(self) -> None:
        outputs = [out[:, :100] for out in _outputs({})]
        detector = RetinaFaceDetector(_session(outputs), "retinaface_mobilenetv2")
        with pytest.raises(RuntimeError, match="anchors"):
            detector.detect(np.zeros((320, 320, 3), dtype=np.uint8))

    def test_image_larger_than_input_raises(self) -> None:
        detector = RetinaFaceDetector(_session(_outputs({})), "retinaface_mobilenetv2")
        with pytest.raises(ValueError, match="exceeds"):
            detector.detect(np.zeros((480, 640, 3), dtype=np.uint8))
