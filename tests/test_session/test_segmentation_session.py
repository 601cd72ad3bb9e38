"""End-to-end tests of SegmentationSession on the fake predictor.

Sessions run against LocalChannel unless a test needs a real worker
process. The fake predictor paints a square around positive clicks and
fills boxes, so polygon bounds are predictable.
"""

from __future__ import annotations

import logging
from unittest.mock import patch

import numpy as np
import pytest
from fakes import crashing_predictor, failing_predictor, predictor_of
from PIL import Image

from sam_session.engine.channel import LocalChannel, ProcessChannel
from sam_session.config import MAX_ENCODED_AREA_RS
from sam_session.engine.protocol import DecodeBoxRequest, EncodeRequest, InitRequest, TaskStatus
from sam_session.errors import ArgumentError, ProcessError, ProcessInterruptedError, ProtocolError
from sam_session.geometry import Rect
from sam_session.prompts import BoxPrompt, MaskPrompt, PointsPrompt
from sam_session.session import SegmentationSession, exceeds_encode_limits
from sam_session.transport.shm import SharedBuffer


class TestPointPrompts:
    """Test clicks on a fully encoded image."""

    def test_click_segments_object(self, make_session, make_image, local_channel):
        """Verify a click encodes once and returns the painted square."""
        session = make_session(make_image(100, 100))

        polygons = session.fetch_2d_segmentation([(50, 50)])

        fake = predictor_of(local_channel)
        assert fake.encode_count == 1
        assert fake.decode_count == 1
        assert len(polygons) == 1
        assert polygons[0].bounds() == Rect(47, 47, 6, 6)

    def test_repeated_click_reuses_encoding(self, make_session, make_image, local_channel):
        """Verify the same prompt twice does not re-encode."""
        session = make_session(make_image(100, 100))

        first = session.fetch_2d_segmentation([(50, 50)])
        second = session.fetch_2d_segmentation([(50, 50)])

        assert first == second
        assert predictor_of(local_channel).encode_count == 1

    def test_negative_points_sent(self, make_session, make_image, local_channel):
        """Verify background clicks reach the worker with label 0."""
        session = make_session(make_image(100, 100))

        session.fetch_2d_segmentation([(50, 50)], neg_points=[(10, 10)])

        call = predictor_of(local_channel).predict_calls[-1]
        assert call["points"] == [(10, 10), (50, 50)]
        assert call["labels"] == [0, 1]

    def test_point_outside_region_raises(self, make_session, make_image, caplog):
        """Verify clicks outside the given region are rejected and logged."""
        session = make_session(make_image(100, 100))

        with caplog.at_level(logging.ERROR, logger="sam_session.tests"):
            with pytest.raises(ArgumentError, match="out of the region"):
                session.fetch_2d_segmentation([(80, 80)], region=(0, 0, 50, 50))

        assert "Points prompt failed" in caplog.text

    def test_point_outside_image_raises(self, make_session, make_image):
        """Verify clicks off the image are rejected."""
        session = make_session(make_image(100, 100))

        with pytest.raises(ArgumentError):
            session.fetch_2d_segmentation([(150, 50)])

    def test_segment_dispatches_points(self, make_session, make_image):
        """Verify segment() accepts a PointsPrompt."""
        session = make_session(make_image(100, 100))

        polygons = session.segment(PointsPrompt(positive=((50, 50),)))

        assert polygons[0].bounds() == Rect(47, 47, 6, 6)


class TestBoxPrompts:
    """Test box prompts and the crops they trigger."""

    def test_corner_box_crops(self, make_session, make_image):
        """Verify a tiny corner box re-encodes a crop shifted into the image."""
        session = make_session(make_image(1000, 1000))

        polygons = session.fetch_2d_segmentation_from_box((0, 0, 10, 10))

        assert session.encoded_region.extent == Rect(0, 0, 138, 138)
        assert polygons[0].bounds() == Rect(0, 0, 10, 10)

    def test_crop_then_click(self, make_session, make_image, local_channel):
        """Verify polygons and clicks are translated through the crop origin."""
        session = make_session(make_image(1000, 1000))
        session.fetch_2d_segmentation_from_box((0, 0, 10, 10))

        polygons = session.fetch_2d_segmentation_from_box(BoxPrompt(500, 500, 520, 530))

        assert session.encoded_region.origin == (410, 365)
        assert polygons[0].bounds() == Rect(500, 500, 20, 30)

        encodes = predictor_of(local_channel).encode_count
        clicked = session.fetch_2d_segmentation([(505, 510)])

        fake = predictor_of(local_channel)
        assert fake.encode_count == encodes
        assert fake.predict_calls[-1]["points"] == [(95, 145)]
        assert clicked[0].bounds() == Rect(502, 507, 6, 6)

    def test_box_clamped_to_image(self, make_session, make_image, local_channel):
        """Verify boxes reaching past the image are clipped."""
        session = make_session(make_image(100, 100))

        session.fetch_2d_segmentation_from_box((50, 50, 150, 150))

        assert predictor_of(local_channel).predict_calls[-1]["box"] == (50, 50, 99, 99)

    def test_box_outside_image_raises(self, make_session, make_image):
        """Verify boxes entirely off the image are rejected."""
        session = make_session(make_image(100, 100))

        with pytest.raises(ArgumentError):
            session.fetch_2d_segmentation_from_box((200, 200, 300, 300))


class TestMaskPrompts:
    """Test label image prompts."""

    def test_each_label_segmented(self, make_session, make_image):
        """Verify polygons come back tagged with their labels."""
        session = make_session(make_image(100, 100))
        labels = np.zeros((100, 100), dtype=np.uint8)
        labels[10:20, 10:20] = 1
        labels[60:70, 60:70] = 2

        polygons = session.fetch_2d_segmentation_from_mask(labels)

        assert {p.label for p in polygons} == {1, 2}

    def test_empty_mask(self, make_session, make_image, local_channel):
        """Verify an all-zero mask returns nothing without a worker call."""
        session = make_session(make_image(100, 100))

        assert session.fetch_2d_segmentation_from_mask(np.zeros((100, 100), dtype=np.uint8)) == []
        assert predictor_of(local_channel).decode_count == 0

    def test_segment_dispatches_mask(self, make_session, make_image):
        """Verify segment() accepts a MaskPrompt."""
        session = make_session(make_image(100, 100))
        labels = np.zeros((100, 100), dtype=np.uint8)
        labels[40:60, 40:60] = 5

        polygons = session.segment(MaskPrompt(labels))

        assert [p.label for p in polygons] == [5]

    def test_bad_mask_shape_raises(self, make_session, make_image):
        """Verify masks matching neither image nor crop are rejected."""
        session = make_session(make_image(100, 100))

        with pytest.raises(ArgumentError):
            session.fetch_2d_segmentation_from_mask(np.ones((30, 40), dtype=np.uint8))


class TestFailures:
    """Test error propagation and recovery."""

    def test_init_failure(self, make_image, test_logger):
        """Verify a model that fails to load raises and stops the worker."""
        channel = LocalChannel(failing_predictor)

        with pytest.raises(ProcessError) as exc_info:
            SegmentationSession.instantiate(
                make_image(50, 50), logger=test_logger, channel=channel, warm_up=False
            )

        assert exc_info.value.status == TaskStatus.FAILED
        assert "No weights found" in str(exc_info.value)
        assert channel.submit(InitRequest(model_id="fake/sam")).status == TaskStatus.CANCELED

    def test_worker_crash(self, make_image, test_logger):
        """Verify a worker process dying at startup surfaces as CRASHED."""
        channel = ProcessChannel(crashing_predictor, join_timeout=10.0)

        with pytest.raises(ProcessError) as exc_info:
            SegmentationSession.instantiate(
                make_image(50, 50), logger=test_logger, channel=channel, warm_up=False
            )

        assert exc_info.value.status == TaskStatus.CRASHED
        assert not channel.is_alive

    def test_unknown_variant(self, make_image, local_channel):
        """Verify unknown variants are argument errors."""
        with pytest.raises(ArgumentError, match="Unknown model"):
            SegmentationSession.instantiate(make_image(50, 50), variant="vit-x", channel=local_channel)

    def test_malformed_output_releases_buffers(self, make_session, make_image, local_channel):
        """Verify a protocol error frees shared memory and leaves the session usable."""
        session = make_session(make_image(100, 100))
        labels = np.zeros((100, 100), dtype=np.uint8)
        labels[10:20, 10:20] = 1

        real_submit = local_channel.submit
        real_from_array = SharedBuffer.from_array
        created: list[SharedBuffer] = []

        def drop_y(request, on_progress=None):
            result = real_submit(request, on_progress)
            result.outputs.pop("contours_y", None)
            return result

        def tracking(array):
            buffer = real_from_array(array)
            created.append(buffer)
            return buffer

        with (
            patch.object(local_channel, "submit", side_effect=drop_y),
            patch("sam_session.transport.marshal.SharedBuffer.from_array", side_effect=tracking),
        ):
            with pytest.raises(ProtocolError, match="contours_y"):
                session.fetch_2d_segmentation_from_mask(labels)

        assert len(created) == 1
        assert all(buffer.released for buffer in created)
        assert session.fetch_2d_segmentation([(50, 50)])

    def test_interrupted_encode_leaves_nothing_encoded(self, make_session, make_image, local_channel):
        """Verify Ctrl-C during an encode frees its buffer and the next prompt re-encodes."""
        session = make_session(make_image(1000, 1000))
        real_submit = local_channel.submit
        real_from_array = SharedBuffer.from_array
        created: list[SharedBuffer] = []

        def interrupt_encode(request, on_progress=None):
            if isinstance(request, EncodeRequest):
                raise KeyboardInterrupt
            return real_submit(request, on_progress)

        def tracking(array):
            buffer = real_from_array(array)
            created.append(buffer)
            return buffer

        with (
            patch.object(local_channel, "submit", side_effect=interrupt_encode),
            patch("sam_session.transport.marshal.SharedBuffer.from_array", side_effect=tracking),
        ):
            with pytest.raises(ProcessInterruptedError):
                session.fetch_2d_segmentation_from_box((0, 0, 10, 10))

        assert len(created) == 1
        assert created[0].released
        assert session._transport.outstanding == 0
        assert session.encoded_region is None

        polygons = session.fetch_2d_segmentation_from_box((0, 0, 10, 10))

        assert session.encoded_region.extent == Rect(0, 0, 138, 138)
        assert polygons[0].bounds() == Rect(0, 0, 10, 10)

    def test_interrupted_decode_keeps_encoding(self, make_session, make_image, local_channel):
        """Verify Ctrl-C during a decode leaves the encoding in place for the next prompt."""
        session = make_session(make_image(1000, 1000))
        real_submit = local_channel.submit

        def interrupt_decode(request, on_progress=None):
            if isinstance(request, DecodeBoxRequest):
                raise KeyboardInterrupt
            return real_submit(request, on_progress)

        with patch.object(local_channel, "submit", side_effect=interrupt_decode):
            with pytest.raises(ProcessInterruptedError):
                session.fetch_2d_segmentation_from_box((400, 400, 700, 700))

        assert session.encoded_region.covers_whole_image
        assert session._transport.outstanding == 0

        polygons = session.fetch_2d_segmentation_from_box((400, 400, 700, 700))

        assert polygons[0].bounds() == Rect(400, 400, 300, 300)
        assert predictor_of(local_channel).encode_count == 1


class TestLifecycle:
    """Test image switching, options and shutdown."""

    def test_update_image(self, make_session, make_image, local_channel):
        """Verify a new image is encoded and old encodings dropped."""
        session = make_session(make_image(100, 100))

        session.update_image(make_image(60, 80))

        assert session.image.shape == (60, 80, 3)
        assert session.encoded_region.extent == Rect(0, 0, 80, 60)
        assert predictor_of(local_channel).encode_count == 2

    def test_only_biggest_forwarded(self, make_session, make_image, local_channel):
        """Verify the only-biggest option reaches the worker."""
        session = make_session(make_image(100, 100))
        session.set_return_only_biggest(True)

        with patch.object(local_channel, "submit", wraps=local_channel.submit) as submit:
            session.fetch_2d_segmentation([(50, 50)])

        assert session.only_biggest
        assert submit.call_args.args[0].only_biggest is True

    def test_pil_image(self, make_session, make_image):
        """Verify PIL images are accepted."""
        session = make_session(Image.fromarray(make_image(40, 50)))

        assert session.image.shape == (40, 50, 3)
        assert session.encoded_region.covers_whole_image

    def test_large_image_defers_encode(self, make_session, make_image, local_channel):
        """Verify oversized images are encoded around the first click."""
        image = make_image(10, 9001)
        assert exceeds_encode_limits(9001, 10)

        session = make_session(image)
        assert session.encoded_region is None
        assert predictor_of(local_channel).encode_count == 0

        polygons = session.fetch_2d_segmentation([(4500, 5)])

        assert session.encoded_region.extent.contains_point(4500, 5)
        assert session.encoded_region.width == MAX_ENCODED_AREA_RS
        assert polygons[0].bounds() == Rect(4497, 2, 6, 6)

    def test_crop_mask_without_encoding_raises(self, make_session, make_image):
        """Verify crop-sized masks need an existing encoding."""
        session = make_session(make_image(10, 9001))

        with pytest.raises(ArgumentError, match="nothing is encoded"):
            session.fetch_2d_segmentation_from_mask(np.ones((5, 5), dtype=np.uint8))

    def test_close_is_idempotent(self, make_session, make_image):
        """Verify closing twice is harmless and later prompts fail."""
        session = make_session(make_image(100, 100))

        session.close_process()
        session.close_process()

        assert session.closed
        with pytest.raises(ProcessError):
            session.fetch_2d_segmentation([(50, 50)])

    def test_ui_closed(self, make_session, make_image):
        """Verify the UI-closed notification stops the worker."""
        session = make_session(make_image(100, 100))

        session.notify_ui_has_been_closed()

        assert session.closed

    def test_context_manager(self, local_channel, make_image, test_logger):
        """Verify sessions close when used as context managers."""
        with SegmentationSession.instantiate(
            make_image(50, 50), logger=test_logger, channel=local_channel, warm_up=False
        ) as session:
            session.fetch_2d_segmentation([(25, 25)])

        assert session.closed
