"""
Tests for the channel demultiplexer and PCM helpers.
"""

import numpy as np
import pytest

from src.assist.audio import (
    ChannelAssignment,
    ChannelDemultiplexer,
    block_size_frames,
    get_audio_duration_ms,
    interleave_channels,
)
from src.assist.errors import ConfigurationError


def _pcm(values):
    return np.asarray(values, dtype="<i2").tobytes()


def _random_stereo(frames: int, seed: int = 7) -> bytes:
    rng = np.random.default_rng(seed)
    return rng.integers(-32768, 32767, size=(frames, 2), dtype=np.int16).astype("<i2").tobytes()


class TestChannelAssignment:
    """Startup validation of the role-to-channel mapping."""

    def test_default_mapping_is_valid(self):
        ChannelAssignment().validate(device_channels=2)

    def test_equal_indices_rejected(self):
        with pytest.raises(ConfigurationError) as exc:
            ChannelAssignment(operator=1, counterparty=1).validate()
        assert exc.value.is_fatal

    def test_negative_index_rejected(self):
        with pytest.raises(ConfigurationError):
            ChannelAssignment(operator=-1, counterparty=1).validate()

    def test_device_with_too_few_channels_rejected(self):
        with pytest.raises(ConfigurationError) as exc:
            ChannelAssignment(operator=0, counterparty=3).validate(device_channels=2)
        assert exc.value.code == "INSUFFICIENT_CHANNELS"

    def test_required_channels(self):
        assert ChannelAssignment(operator=2, counterparty=0).required_channels == 3


class TestDemultiplexer:
    """Frame splitting and leftover handling."""

    def test_splits_interleaved_samples_by_role(self):
        demux = ChannelDemultiplexer(ChannelAssignment())
        result = demux.feed(_pcm([1, 100, 2, 200, 3, 300]))

        assert result.frames == 3
        assert result.operator == _pcm([1, 2, 3])
        assert result.counterparty == _pcm([100, 200, 300])
        assert demux.leftover == b""
        assert demux.frames_processed == 3

    def test_swapped_assignment(self):
        demux = ChannelDemultiplexer(ChannelAssignment(operator=1, counterparty=0))
        result = demux.feed(_pcm([1, 100, 2, 200]))

        assert result.operator == _pcm([100, 200])
        assert result.counterparty == _pcm([1, 2])

    def test_extra_channels_are_ignored(self):
        demux = ChannelDemultiplexer(ChannelAssignment(operator=0, counterparty=2), channel_count=4)
        result = demux.feed(_pcm([1, 9, 100, 9, 2, 9, 200, 9]))

        assert demux.bytes_per_frame == 8
        assert result.operator == _pcm([1, 2])
        assert result.counterparty == _pcm([100, 200])

    @pytest.mark.parametrize("frames", [0, 1, 2, 160, 1601])
    def test_split_then_interleave_reproduces_input(self, frames):
        data = _random_stereo(frames)
        demux = ChannelDemultiplexer(ChannelAssignment())
        result = demux.feed(data)

        assert interleave_channels(result.operator, result.counterparty) == data

    def test_short_buffer_is_kept_as_leftover(self):
        demux = ChannelDemultiplexer(ChannelAssignment())
        result = demux.feed(b"\x01\x02\x03")

        assert result.operator == b""
        assert result.counterparty == b""
        assert demux.leftover == b"\x01\x02\x03"

    def test_leftover_always_shorter_than_a_frame(self):
        demux = ChannelDemultiplexer(ChannelAssignment())
        for size in (1, 3, 5, 7, 2, 9):
            demux.feed(b"\x00" * size)
            assert len(demux.leftover) < demux.bytes_per_frame

    @pytest.mark.parametrize("cut", [1, 2, 3, 5, 401, 639])
    def test_two_slices_match_one_slice(self, cut):
        data = _random_stereo(160, seed=cut)

        whole = ChannelDemultiplexer(ChannelAssignment()).feed(data)

        demux = ChannelDemultiplexer(ChannelAssignment())
        first = demux.feed(data[:cut])
        second = demux.feed(data[cut:])

        assert first.operator + second.operator == whole.operator
        assert first.counterparty + second.counterparty == whole.counterparty
        assert demux.leftover == b""

    def test_reset_drops_leftover(self):
        demux = ChannelDemultiplexer(ChannelAssignment())
        demux.feed(b"\x00\x01")
        demux.reset()
        assert demux.leftover == b""

    def test_invalid_assignment_fails_before_any_data(self):
        with pytest.raises(ConfigurationError):
            ChannelDemultiplexer(ChannelAssignment(operator=0, counterparty=0))


class TestHelpers:
    def test_duration_of_one_second_mono(self):
        assert get_audio_duration_ms(b"\x00\x00" * 16000) == pytest.approx(1000.0)

    def test_duration_of_stereo(self):
        assert get_audio_duration_ms(b"\x00\x00" * 3200, channels=2) == pytest.approx(100.0)

    def test_duration_empty(self):
        assert get_audio_duration_ms(b"") == 0.0

    def test_block_size(self):
        assert block_size_frames(100, 16000) == 1600
        assert block_size_frames(0, 16000) == 1
