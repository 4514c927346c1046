"""Unit tests for the AFAN animation container"""

import io
import struct

import numpy as np
import pytest

from audio2afan import (
    AFAN_MAGIC,
    AfanStreamWriter,
    ARKitBlendShape,
    BlendshapeFrame,
    FormatError,
    decode_afan,
    encode_afan,
)
from audio2afan.afan import HEADER_SIZE, quantize


@pytest.fixture
def frames():
    rng = np.random.RandomState(7)
    return rng.uniform(0, 1, (10, 52)).astype(np.float32)


class TestEncodeAfan:
    """Writer"""

    def test_header_layout(self, frames):
        data = encode_afan(frames, fps=60)
        magic, version, fps, channels, reserved, count = struct.unpack_from("<IBBBBI", data)

        assert data[:4] == b"NAFA"
        assert magic == AFAN_MAGIC
        assert (version, fps, channels, reserved, count) == (2, 60, 52, 0, 10)
        assert len(data) == HEADER_SIZE + 10 * 52

    def test_quantize_clamps(self):
        np.testing.assert_array_equal(quantize([-1.0, 0.0, 0.5, 1.0, 2.0, np.nan]), [0, 0, 128, 255, 255, 0])

    def test_accepts_blendshape_frames_and_dicts(self):
        data = encode_afan([BlendshapeFrame.zeros(), {"jawOpen": 1.0}])
        anim = decode_afan(data)
        assert anim.num_frames == 2
        assert anim.frame_at_time(0.05)["jawOpen"] == 1.0

    def test_empty_animation(self):
        anim = decode_afan(encode_afan(np.zeros((0, 52))))
        assert anim.num_frames == 0
        assert anim.duration == 0.0

    @pytest.mark.parametrize("fps", [0, 256])
    def test_invalid_fps(self, frames, fps):
        with pytest.raises(ValueError):
            encode_afan(frames, fps=fps)

    def test_invalid_version(self, frames):
        with pytest.raises(ValueError):
            encode_afan(frames, version=3)

    def test_custom_names_need_version_1(self):
        with pytest.raises(ValueError):
            encode_afan(np.zeros((1, 2)), names=["a", "b"], version=2)

    def test_channel_mismatch(self):
        with pytest.raises(ValueError):
            encode_afan(np.zeros((3, 40)))


class TestDecodeAfan:
    """Reader"""

    def test_round_trip_error(self, frames):
        anim = decode_afan(encode_afan(frames))
        assert anim.version == 2
        assert anim.names == ARKitBlendShape
        assert np.max(np.abs(anim.frames - frames)) <= 1 / 510 + 1e-7

    def test_version_1_names(self):
        names = ["smile", "blink", "émotion"]
        data = encode_afan(np.full((2, 3), 0.5), fps=24, version=1, names=names)
        anim = decode_afan(data)

        assert anim.version == 1
        assert anim.names == names
        assert anim.frames.shape == (2, 3)
        assert anim.to_dicts()[1]["time"] == pytest.approx(1 / 24)

    def test_rejects_npy_magic(self):
        data = bytes.fromhex("4E554D50") + b"\x00" * 20
        with pytest.raises(FormatError):
            decode_afan(data)

    def test_truncated_header(self):
        with pytest.raises(FormatError):
            decode_afan(b"NAFA")

    def test_truncated_frames(self, frames):
        with pytest.raises(FormatError):
            decode_afan(encode_afan(frames)[:-1])

    def test_unsupported_version(self):
        data = struct.pack("<IBBBBI", AFAN_MAGIC, 9, 30, 52, 0, 0)
        with pytest.raises(FormatError):
            decode_afan(data)

    def test_too_many_arkit_channels(self):
        data = struct.pack("<IBBBBI", AFAN_MAGIC, 2, 30, 60, 0, 0)
        with pytest.raises(FormatError):
            decode_afan(data)

    def test_zero_fps(self):
        data = struct.pack("<IBBBBI", AFAN_MAGIC, 2, 0, 52, 0, 0)
        with pytest.raises(FormatError):
            decode_afan(data)


class TestFrameLookup:
    """Time to frame index mapping"""

    def test_floor_and_clamp(self, frames):
        anim = decode_afan(encode_afan(frames, fps=10))
        assert anim.frame_index_at(0.0) == 0
        assert anim.frame_index_at(0.19) == 1
        assert anim.frame_index_at(-5.0) == 0
        assert anim.frame_index_at(100.0) == 9

    def test_no_frames(self):
        anim = decode_afan(encode_afan(np.zeros((0, 52))))
        with pytest.raises(IndexError):
            anim.frame_index_at(0.0)


class TestAfanStreamWriter:
    """Incremental writer"""

    def test_matches_batch_encoding(self, frames):
        stream = io.BytesIO()
        with AfanStreamWriter(stream, fps=30) as writer:
            for row in frames:
                writer.write_frame(row)

        assert writer.frame_count == 10
        assert stream.getvalue() == encode_afan(frames, fps=30)

    def test_version_1_stream(self):
        stream = io.BytesIO()
        with AfanStreamWriter(stream, version=1, names=["a", "b"]) as writer:
            writer.write_frame([0.0, 1.0])
        anim = decode_afan(stream.getvalue())
        assert anim.names == ["a", "b"]
        np.testing.assert_array_equal(anim.frames, [[0.0, 1.0]])

    def test_write_after_close(self):
        writer = AfanStreamWriter(io.BytesIO())
        writer.close()
        with pytest.raises(ValueError):
            writer.write_frame(BlendshapeFrame.zeros())
