"""
Aggregate audio device capture.

A single multi-channel input device (e.g. a macOS Aggregate Device combining
the operator's microphone and a loopback of the call audio) is opened through
PortAudio. The PortAudio callback runs on its own thread; it hands raw
interleaved chunks to the event loop, where a bounded queue feeds the pump
task. When the queue is full the oldest chunk is dropped.

A watchdog reports NO_AUDIO_DATA if nothing arrives within the warm-up window,
since a misrouted device is silent rather than broken.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import structlog

from src.assist.audio import block_size_frames
from src.assist.errors import AssistError, CaptureError, ConfigurationError, ErrorType, Severity

logger = structlog.get_logger(__name__)

AudioHandler = Callable[[bytes], Awaitable[None]]
CaptureErrorHandler = Callable[[AssistError], Awaitable[None]]


class CaptureStream(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...

    def close(self) -> None: ...


class CaptureBackend(Protocol):
    """Device access; `SoundDeviceBackend` in production, fakes in tests."""

    def query_devices(self) -> List[Dict[str, Any]]: ...

    def open_stream(
        self,
        *,
        device: int,
        channels: int,
        samplerate: int,
        blocksize: int,
        callback: Callable[[bytes], None],
        finished_callback: Optional[Callable[[], None]] = None,
    ) -> CaptureStream: ...


class SoundDeviceBackend:
    """PortAudio via the sounddevice package (imported on first use)."""

    def _sd(self):
        try:
            import sounddevice as sd
        except Exception as exc:  # pragma: no cover - environment-dependent
            raise CaptureError(
                "sounddevice / PortAudio is not available",
                code="CAPTURE_BACKEND_MISSING",
                details=[
                    "Install PortAudio (brew install portaudio) and the sounddevice package",
                    f"{type(exc).__name__}: {exc}",
                ],
            ) from exc
        return sd

    def query_devices(self) -> List[Dict[str, Any]]:
        sd = self._sd()
        devices = []
        for index, device in enumerate(sd.query_devices()):
            info = dict(device)
            info.setdefault("index", index)
            devices.append(info)
        return devices

    def open_stream(
        self,
        *,
        device: int,
        channels: int,
        samplerate: int,
        blocksize: int,
        callback: Callable[[bytes], None],
        finished_callback: Optional[Callable[[], None]] = None,
    ) -> CaptureStream:
        sd = self._sd()

        def _callback(indata, _frames, _time, status):
            if status:
                logger.debug("Capture stream status", status=str(status))
            callback(bytes(indata))

        return sd.RawInputStream(
            samplerate=samplerate,
            channels=channels,
            dtype="int16",
            device=device,
            blocksize=blocksize,
            callback=_callback,
            finished_callback=finished_callback,
        )


def find_input_device(devices: List[Dict[str, Any]], name: str) -> Optional[Dict[str, Any]]:
    """Exact (case-insensitive) name match first, then substring."""
    candidates = [d for d in devices if d.get("max_input_channels", 0) > 0]
    name_lower = (name or "").strip().lower()
    if not name_lower:
        return None
    for device in candidates:
        if device.get("name", "").strip().lower() == name_lower:
            return device
    for device in candidates:
        if name_lower in device.get("name", "").lower():
            return device
    return None


def classify_capture_error(exc: BaseException, device: str) -> CaptureError:
    """Map a device/backend failure to a typed, actionable error."""
    if isinstance(exc, CaptureError):
        return exc

    message = str(exc) or type(exc).__name__
    text = message.lower()

    if "not found" in text or "no such" in text or "invalid device" in text:
        return CaptureError(
            f'Aggregate Device "{device}" not found',
            code="DEVICE_NOT_FOUND",
            error_type=ErrorType.CONFIGURATION_ERROR,
            details=[
                "Device name must match the name shown in Audio MIDI Setup",
                "The Aggregate Device must be created and enabled",
                "Set AGGREGATE_AUDIO_DEVICE to the exact device name",
                message,
            ],
        )
    if "permission" in text or "denied" in text or "not authorized" in text:
        return CaptureError(
            "Permission denied to access audio device",
            code="PERMISSION_DENIED",
            details=[
                "Grant microphone access to the terminal or Python process",
                "Restart the service after changing privacy settings",
                message,
            ],
        )
    if "busy" in text or "in use" in text or "unanticipated host error" in text:
        return CaptureError(
            f'Aggregate Device "{device}" is in use by another application',
            code="DEVICE_IN_USE",
            details=["Close other applications using the device", message],
        )
    if "invalid" in text or "channel" in text:
        return CaptureError(
            "Invalid audio device configuration",
            code="INVALID_CONFIGURATION",
            error_type=ErrorType.CONFIGURATION_ERROR,
            details=[
                "The device needs at least as many input channels as the channel mapping",
                "Check OPERATOR_AUDIO_CHANNEL and CUSTOMER_AUDIO_CHANNEL",
                message,
            ],
        )
    return CaptureError(
        f"Aggregate audio capture failed: {message}",
        code="UNKNOWN_ERROR",
        details=[f"{type(exc).__name__}: {message}"],
    )


@dataclass
class CaptureMetrics:
    bytes_received: int = 0
    chunks_received: int = 0
    chunks_dropped: int = 0


class AggregateAudioCapture:
    """
    Capture from one multi-channel device and deliver interleaved chunks.

    `on_audio` receives raw interleaved PCM on the event loop; splitting it
    per role is the caller's job.
    """

    def __init__(
        self,
        config: Any,
        on_audio: AudioHandler,
        on_error: CaptureErrorHandler,
        backend: Optional[CaptureBackend] = None,
    ):
        self.config = config
        self.device_name: str = config.aggregate_audio_device
        self.channels: int = config.audio_channels
        self.sample_rate: int = config.sample_rate
        self._on_audio = on_audio
        self._on_error = on_error
        self._backend = backend or SoundDeviceBackend()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, config.capture_queue_max_chunks))
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stream: Optional[CaptureStream] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._error_task: Optional[asyncio.Task] = None
        self._running = False
        self.device_info: Optional[Dict[str, Any]] = None
        self.metrics = CaptureMetrics()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Open the device and start delivering audio.

        Raises:
            ConfigurationError: bad channel mapping or too few device channels.
            CaptureError: device missing, busy, denied, or backend unavailable.
        """
        assignment = self.config.channel_assignment
        assignment.validate(device_channels=self.channels)

        try:
            devices = self._backend.query_devices()
        except Exception as e:
            raise classify_capture_error(e, self.device_name) from e

        device = find_input_device(devices, self.device_name)
        if device is None:
            available = [d.get("name", "") for d in devices if d.get("max_input_channels", 0) > 0]
            raise ConfigurationError(
                f'Aggregate Device "{self.device_name}" not found',
                code="DEVICE_NOT_FOUND",
                details=[
                    "Set AGGREGATE_AUDIO_DEVICE to the exact name from Audio MIDI Setup",
                    f"Input devices: {', '.join(available) or 'none'}",
                ],
            )

        device_channels = int(device.get("max_input_channels", 0))
        assignment.validate(device_channels=device_channels)
        if device_channels < self.channels:
            raise ConfigurationError(
                "Capture device has fewer input channels than AUDIO_CHANNELS",
                code="INSUFFICIENT_CHANNELS",
                details=[f"device reports {device_channels}, AUDIO_CHANNELS={self.channels}"],
            )
        self.device_info = device

        self._loop = asyncio.get_running_loop()
        blocksize = block_size_frames(self.config.capture_block_ms, self.sample_rate)
        try:
            self._stream = self._backend.open_stream(
                device=device.get("index"),
                channels=self.channels,
                samplerate=self.sample_rate,
                blocksize=blocksize,
                callback=self._on_device_data,
                finished_callback=self._on_stream_finished,
            )
            self._stream.start()
        except Exception as e:
            self._close_stream()
            raise classify_capture_error(e, self.device_name) from e

        self._running = True
        self._pump_task = asyncio.create_task(self._pump())
        self._watchdog_task = asyncio.create_task(self._watchdog())

        logger.info(
            "Aggregate capture started",
            device=device.get("name"),
            device_channels=device_channels,
            channels=self.channels,
            operator_channel=assignment.operator + 1,
            counterparty_channel=assignment.counterparty + 1,
            blocksize=blocksize,
        )

    def _on_device_data(self, chunk: bytes) -> None:
        # PortAudio thread
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._enqueue, chunk)
        except RuntimeError:
            # loop shutting down
            pass

    def _on_stream_finished(self) -> None:
        # PortAudio thread; also called after our own stop(), when _running is False
        loop = self._loop
        if not self._running or loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._report_stream_end)
        except RuntimeError:
            pass

    def _report_stream_end(self) -> None:
        if not self._running:
            return
        self._running = False
        logger.error(
            "Capture stream ended unexpectedly",
            device=self.device_name,
            bytes_received=self.metrics.bytes_received,
        )
        self._error_task = asyncio.ensure_future(
            self._on_error(
                CaptureError(
                    f'Audio stream from "{self.device_name}" stopped unexpectedly',
                    code="STREAM_ERROR",
                    error_type=ErrorType.STREAM_ERROR,
                    severity=Severity.FATAL,
                    details=[
                        "The device may have been unplugged or reconfigured",
                        "Check the Aggregate Device in Audio MIDI Setup and start again",
                    ],
                )
            )
        )

    def _enqueue(self, chunk: bytes) -> None:
        if not self._running or not chunk:
            return
        self.metrics.bytes_received += len(chunk)
        self.metrics.chunks_received += 1
        if self._queue.full():
            self._queue.get_nowait()
            self.metrics.chunks_dropped += 1
            if self.metrics.chunks_dropped % 50 == 1:
                logger.warning("Capture queue full, dropping oldest chunk", dropped=self.metrics.chunks_dropped)
        self._queue.put_nowait(chunk)

    async def _pump(self) -> None:
        while True:
            chunk = await self._queue.get()
            try:
                await self._on_audio(chunk)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Capture audio handler failed", error=str(e))

    async def _watchdog(self) -> None:
        await asyncio.sleep(self.config.capture_watchdog_seconds)
        if self.metrics.bytes_received == 0 and self._running:
            logger.warning(
                "No audio data received from capture device",
                device=self.device_name,
                seconds=self.config.capture_watchdog_seconds,
            )
            await self._on_error(
                CaptureError(
                    "No audio data received from Aggregate Device. It may be silent or misconfigured.",
                    code="NO_AUDIO_DATA",
                    error_type=ErrorType.STREAM_ERROR,
                    severity=Severity.WARNING,
                    details=[
                        "Check that both inputs of the Aggregate Device are enabled",
                        "Check the call audio is routed to the loopback device",
                    ],
                )
            )

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        except Exception as e:
            logger.debug("Capture stream stop failed", error=str(e))
        try:
            stream.close()
        except Exception as e:
            logger.debug("Capture stream close failed", error=str(e))

    async def stop(self) -> None:
        """Close the device and stop the pump. Queued chunks are discarded."""
        was_running = self._running
        self._running = False
        self._close_stream()

        current = asyncio.current_task()
        tasks = [t for t in (self._pump_task, self._watchdog_task) if t is not None and t is not current]
        self._pump_task = self._watchdog_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        while not self._queue.empty():
            self._queue.get_nowait()

        if was_running:
            logger.info(
                "Aggregate capture stopped",
                bytes_received=self.metrics.bytes_received,
                chunks_dropped=self.metrics.chunks_dropped,
            )


def create_capture(
    config: Any,
    on_audio: AudioHandler,
    on_error: CaptureErrorHandler,
) -> AggregateAudioCapture:
    return AggregateAudioCapture(config, on_audio, on_error)
