"""
PCM audio utilities and the channel demultiplexer.

The capture device delivers interleaved 16-bit little-endian PCM at 16kHz with
N channels. Each channel belongs to one call participant. The demultiplexer
splits that stream into one mono byte stream per role, which is what the
speech provider expects (linear16, 16kHz, mono).

Frame layout for N=2, operator on channel 0:

    | op s0 | cp s0 | op s1 | cp s1 | ...
      2B      2B      2B      2B
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from src.assist.errors import ConfigurationError, DemuxError

SAMPLE_RATE = 16000
BYTES_PER_SAMPLE = 2
DEFAULT_CHANNEL_COUNT = 2

_PCM16 = np.dtype("<i2")


@dataclass(frozen=True)
class ChannelAssignment:
    """Zero-based channel index for each role within an interleaved frame."""
    operator: int = 0
    counterparty: int = 1

    @property
    def required_channels(self) -> int:
        return max(self.operator, self.counterparty) + 1

    def validate(self, device_channels: Optional[int] = None) -> None:
        """
        Fail fast on an unusable mapping.

        Raises:
            ConfigurationError: indices equal or negative, or the device has
                fewer input channels than the mapping needs.
        """
        if self.operator < 0 or self.counterparty < 0:
            raise ConfigurationError(
                "Audio channel indices must be non-negative",
                details=[
                    f"operator channel index: {self.operator}",
                    f"counterparty channel index: {self.counterparty}",
                    "OPERATOR_AUDIO_CHANNEL and CUSTOMER_AUDIO_CHANNEL are 1-based",
                ],
            )
        if self.operator == self.counterparty:
            raise ConfigurationError(
                "Operator and counterparty must use different audio channels",
                details=[f"both roles are mapped to channel index {self.operator}"],
            )
        if device_channels is not None and device_channels < self.required_channels:
            raise ConfigurationError(
                "Capture device has too few input channels for the channel mapping",
                code="INSUFFICIENT_CHANNELS",
                details=[
                    f"device reports {device_channels} input channel(s)",
                    f"mapping needs at least {self.required_channels}",
                    "Check the aggregate device setup in Audio MIDI Setup",
                ],
            )


@dataclass(frozen=True)
class DemuxResult:
    """Per-role PCM extracted from one `feed()` call."""
    operator: bytes
    counterparty: bytes
    frames: int = 0


class ChannelDemultiplexer:
    """
    Splits interleaved PCM into operator and counterparty mono streams.

    Only whole frames are processed; trailing bytes of an incomplete frame are
    kept and prepended to the next chunk, so the leftover is always shorter
    than one frame.
    """

    def __init__(
        self,
        assignment: ChannelAssignment,
        channel_count: int = DEFAULT_CHANNEL_COUNT,
        bytes_per_sample: int = BYTES_PER_SAMPLE,
    ):
        if bytes_per_sample != BYTES_PER_SAMPLE:
            raise ConfigurationError(
                "Only 16-bit PCM capture is supported",
                details=[f"bytes per sample: {bytes_per_sample}"],
            )
        assignment.validate(device_channels=channel_count)
        self.assignment = assignment
        self.channel_count = channel_count
        self.bytes_per_sample = bytes_per_sample
        self._leftover = b""
        self._frames_processed = 0

    @property
    def bytes_per_frame(self) -> int:
        return self.bytes_per_sample * self.channel_count

    @property
    def leftover(self) -> bytes:
        return self._leftover

    @property
    def frames_processed(self) -> int:
        return self._frames_processed

    def feed(self, chunk: bytes) -> DemuxResult:
        """
        Consume a chunk of interleaved PCM.

        Raises:
            DemuxError: the buffered bytes could not be read as frames. The
                leftover is discarded so the next chunk starts realigned.
        """
        buffer = self._leftover + bytes(chunk) if self._leftover else bytes(chunk)
        frame_count = len(buffer) // self.bytes_per_frame
        usable = frame_count * self.bytes_per_frame
        self._leftover = buffer[usable:]

        if frame_count == 0:
            return DemuxResult(operator=b"", counterparty=b"", frames=0)

        try:
            frames = np.frombuffer(buffer, dtype=_PCM16, count=usable // self.bytes_per_sample)
            frames = frames.reshape(frame_count, self.channel_count)
            operator = frames[:, self.assignment.operator].tobytes()
            counterparty = frames[:, self.assignment.counterparty].tobytes()
        except (ValueError, IndexError) as e:
            self._leftover = b""
            raise DemuxError(
                "Skipped audio that could not be split into frames",
                details=[f"{type(e).__name__}: {e}", f"buffered bytes: {len(buffer)}"],
            ) from e

        self._frames_processed += frame_count
        return DemuxResult(operator=operator, counterparty=counterparty, frames=frame_count)

    def reset(self) -> None:
        self._leftover = b""


def interleave_channels(
    operator: bytes,
    counterparty: bytes,
    assignment: ChannelAssignment = ChannelAssignment(),
    channel_count: int = DEFAULT_CHANNEL_COUNT,
) -> bytes:
    """
    Build interleaved PCM from two mono streams of equal length.

    Channels not named by the assignment are filled with silence.
    """
    op = np.frombuffer(operator, dtype=_PCM16)
    cp = np.frombuffer(counterparty, dtype=_PCM16)
    if op.shape != cp.shape:
        raise ValueError("operator and counterparty streams must have the same sample count")

    frames = np.zeros((op.shape[0], channel_count), dtype=_PCM16)
    frames[:, assignment.operator] = op
    frames[:, assignment.counterparty] = cp
    return frames.tobytes()


def get_audio_duration_ms(pcm_bytes: bytes, sample_rate: int = SAMPLE_RATE, channels: int = 1) -> float:
    """Duration of 16-bit PCM in milliseconds."""
    if not pcm_bytes:
        return 0.0
    samples = len(pcm_bytes) // (BYTES_PER_SAMPLE * channels)
    return samples / sample_rate * 1000


def block_size_frames(block_ms: int, sample_rate: int = SAMPLE_RATE) -> int:
    """Frames per capture callback for a target block duration."""
    return max(1, int(sample_rate * block_ms / 1000))
