"""
语音采集模块：环境噪声校准 + 语音活动检测 + 分段录音 + 远程转写。

状态机：
    IDLE -> CALIBRATING -> ARMED -> RECORDING -> TRANSCRIBING -> ARMED ...
任意状态收到 Stop / PermissionLost 都回到 IDLE。

transition() 是纯函数，只返回新状态和要执行的副作用；
VoiceCapture 持有麦克风、定时器和录音器，负责执行这些副作用。
"""

import asyncio
import io
import logging
import time
import wave
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple

import numpy as np
from openai import OpenAIError

from .models import VoicePhase, VoiceSession
from .planner import KeyedClient
from .settings import LLM_TIMEOUT_SECONDS, STT_LANGUAGE, STT_MODEL_NAME, Settings

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16000
FRAME_RATE = 60  # 每秒分析帧数
CALIBRATION_FRAMES = 60  # 约 1 秒
MIN_SPEECH_THRESHOLD = 15.0
SILENCE_FRACTION = 0.6  # 低于阈值的 60% 视为静音
SILENCE_TIMEOUT = 1.8
MAX_RECORD_SECONDS = 8.0
MIN_SEGMENT_BYTES = 1000  # 更短的录音当作噪声丢弃
ERROR_DISPLAY_SECONDS = 2.0


class MicrophoneError(RuntimeError):
    """麦克风无法打开（没有权限、没有设备等）"""


class TranscriptionError(RuntimeError):
    """远程语音转写失败"""


# ── 事件 ───────────────────────────────────────────────

@dataclass(frozen=True)
class Start:
    pass


@dataclass(frozen=True)
class Frame:
    amplitude: float
    now: float


@dataclass(frozen=True)
class SilenceElapsed:
    pass


@dataclass(frozen=True)
class TranscriptionFinished:
    pass


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class PermissionLost:
    pass


class Effect(str, Enum):
    START_RECORDER = "start_recorder"
    FINISH_SEGMENT = "finish_segment"
    START_SILENCE_TIMER = "start_silence_timer"
    CANCEL_SILENCE_TIMER = "cancel_silence_timer"
    RELEASE_STREAM = "release_stream"


def transition(session: VoiceSession, event) -> Tuple[VoiceSession, List[Effect]]:
    phase = session.phase

    if isinstance(event, (Stop, PermissionLost)):
        return VoiceSession(), [Effect.CANCEL_SILENCE_TIMER, Effect.RELEASE_STREAM]

    if isinstance(event, Start):
        if phase != VoicePhase.IDLE:
            return session, []
        # 每次开始都重新校准，不沿用上一次的环境噪声
        return VoiceSession(phase=VoicePhase.CALIBRATING), []

    if isinstance(event, Frame):
        return _on_frame(session, event)

    if isinstance(event, SilenceElapsed):
        if phase == VoicePhase.RECORDING and session.silence_pending:
            return replace(session, phase=VoicePhase.TRANSCRIBING, silence_pending=False,
                           is_processing=True), [Effect.FINISH_SEGMENT]
        return session, []

    if isinstance(event, TranscriptionFinished):
        if phase == VoicePhase.TRANSCRIBING:
            return replace(session, phase=VoicePhase.ARMED, is_processing=False, recording_started_at=None), []
        return session, []

    return session, []


def _on_frame(session: VoiceSession, frame: Frame) -> Tuple[VoiceSession, List[Effect]]:
    amplitude = frame.amplitude

    if session.phase == VoicePhase.CALIBRATING:
        n = session.calibration_frames
        ambient = (session.ambient_level * n + amplitude) / (n + 1)
        if n + 1 >= CALIBRATION_FRAMES:
            return replace(
                session,
                phase=VoicePhase.ARMED,
                ambient_level=ambient,
                calibration_frames=n + 1,
                speech_threshold=max(MIN_SPEECH_THRESHOLD, ambient * 2),
            ), []
        return replace(session, ambient_level=ambient, calibration_frames=n + 1), []

    if session.phase == VoicePhase.ARMED:
        if amplitude > session.speech_threshold and not session.is_processing:
            return replace(session, phase=VoicePhase.RECORDING, recording_started_at=frame.now,
                           silence_pending=False), [Effect.START_RECORDER]
        return session, []

    if session.phase == VoicePhase.RECORDING:
        started = session.recording_started_at if session.recording_started_at is not None else frame.now
        elapsed = frame.now - started
        if elapsed > MAX_RECORD_SECONDS:
            effects = [Effect.CANCEL_SILENCE_TIMER] if session.silence_pending else []
            effects.append(Effect.FINISH_SEGMENT)
            return replace(session, phase=VoicePhase.TRANSCRIBING, silence_pending=False,
                           is_processing=True), effects
        if amplitude < session.speech_threshold * SILENCE_FRACTION:
            if not session.silence_pending:
                return replace(session, silence_pending=True), [Effect.START_SILENCE_TIMER]
        elif amplitude > session.speech_threshold and session.silence_pending:
            return replace(session, silence_pending=False), [Effect.CANCEL_SILENCE_TIMER]
        return session, []

    return session, []


# ── 音频分析 ───────────────────────────────────────────

class SpectrumAnalyser:
    """
    每帧取最近 fft_size 个采样做 FFT，把幅度换算成 0-255 的分贝刻度，
    返回所有频点的平均值。与浏览器 AnalyserNode 的 getByteFrequencyData 一致。
    """

    def __init__(self, fft_size: int = 256, smoothing: float = 0.5,
                 min_db: float = -100.0, max_db: float = -30.0):
        self.fft_size = fft_size
        self.smoothing = smoothing
        self.min_db = min_db
        self.max_db = max_db
        self._window = np.blackman(fft_size)
        self._previous = np.zeros(fft_size // 2)

    def __call__(self, block: np.ndarray) -> float:
        samples = np.asarray(block)
        if np.issubdtype(samples.dtype, np.integer):
            samples = samples.astype(np.float32) / 32768.0
        samples = samples.reshape(-1)[-self.fft_size:]
        if len(samples) < self.fft_size:
            samples = np.pad(samples, (self.fft_size - len(samples), 0))

        spectrum = np.abs(np.fft.rfft(samples * self._window))[: self.fft_size // 2] / self.fft_size
        self._previous = self.smoothing * self._previous + (1 - self.smoothing) * spectrum
        db = 20 * np.log10(np.maximum(self._previous, 1e-12))
        scaled = (db - self.min_db) * 255.0 / (self.max_db - self.min_db)
        return float(np.clip(scaled, 0, 255).mean())


def level_from_amplitude(amplitude: float) -> int:
    """界面音量条用的 0-100"""
    return min(100, round(amplitude / 128 * 100))


class SegmentRecorder:
    """收集一段录音的 int16 采样，结束时封装成 WAV"""

    def __init__(self, sample_rate: int = SAMPLE_RATE):
        self.sample_rate = sample_rate
        self._chunks: List[bytes] = []

    def append(self, block: np.ndarray) -> None:
        self._chunks.append(np.asarray(block, dtype=np.int16).tobytes())

    def finish(self) -> bytes:
        if not self._chunks:
            return b""
        buf = io.BytesIO()
        with wave.open(buf, "wb") as wav:
            wav.setnchannels(1)
            wav.setsampwidth(2)
            wav.setframerate(self.sample_rate)
            wav.writeframes(b"".join(self._chunks))
        self._chunks = []
        return buf.getvalue()


class MicrophoneStream:
    """sounddevice 输入流，回调运行在 PortAudio 线程上"""

    def __init__(self, sample_rate: int = SAMPLE_RATE, frame_rate: int = FRAME_RATE, device=None):
        self.sample_rate = sample_rate
        self.block_size = sample_rate // frame_rate
        self.device = device
        self._stream = None
        self._closing = False

    def open(self, on_block: Callable[[np.ndarray], None], on_lost: Callable[[], None]) -> None:
        def callback(indata, frames, time_info, status):
            if status:
                logger.debug(f"audio status: {status}")
            on_block(indata[:, 0].copy())

        def finished():
            if not self._closing:
                on_lost()

        # PortAudio 只在真正打开麦克风时加载
        try:
            import sounddevice as sd
        except OSError as e:
            raise MicrophoneError(f"PortAudio unavailable: {e}") from e

        self._closing = False
        try:
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="int16",
                blocksize=self.block_size,
                device=self.device,
                callback=callback,
                finished_callback=finished,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as e:
            self._stream = None
            raise MicrophoneError(str(e)) from e

    def close(self) -> None:
        self._closing = True
        stream, self._stream = self._stream, None
        if stream is None:
            return
        import sounddevice as sd

        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as e:
            logger.warning(f"⚠ 关闭麦克风失败: {e}")


class Transcriber:
    """OpenAI 兼容的远程语音转写（Groq Whisper）"""

    def __init__(self, settings: Settings, model: str = STT_MODEL_NAME, language: str = STT_LANGUAGE,
                 client=None, timeout: float = LLM_TIMEOUT_SECONDS):
        self.model = model
        self.language = language
        self.timeout = timeout
        self.clients = KeyedClient(settings, timeout, client)

    async def transcribe(self, audio: bytes, filename: str = "audio.wav") -> str:
        client = self.clients.get()
        if client is None:
            raise TranscriptionError("No Groq API key configured")
        try:
            result = await asyncio.wait_for(
                client.audio.transcriptions.create(
                    model=self.model,
                    file=(filename, audio),
                    language=self.language,
                    response_format="json",
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise TranscriptionError("Transcription timed out")
        except OpenAIError as e:
            raise TranscriptionError(f"Whisper API error: {e}") from e
        return (getattr(result, "text", "") or "").strip()


class VoiceCapture:
    """
    语音采集控制器：持有会话状态、麦克风、静音定时器和录音器。
    所有状态变化都在事件循环线程中执行，音频回调通过 call_soon_threadsafe 投递过来。
    """

    def __init__(
        self,
        transcriber: Transcriber,
        on_command: Callable[[str], Awaitable[object]],
        stream_factory: Callable[[], MicrophoneStream] = MicrophoneStream,
        analyser_factory: Callable[[], Callable[[np.ndarray], float]] = SpectrumAnalyser,
        clock: Callable[[], float] = time.monotonic,
        sample_rate: int = SAMPLE_RATE,
        silence_timeout: float = SILENCE_TIMEOUT,
        error_display: float = ERROR_DISPLAY_SECONDS,
        on_status: Optional[Callable[[str], None]] = None,
        on_level: Optional[Callable[[int], None]] = None,
        on_phase: Optional[Callable[[VoicePhase], None]] = None,
    ):
        self.transcriber = transcriber
        self.on_command = on_command
        self.stream_factory = stream_factory
        self.analyser_factory = analyser_factory
        self.clock = clock
        self.sample_rate = sample_rate
        self.silence_timeout = silence_timeout
        self.error_display = error_display
        self.on_status = on_status
        self.on_level = on_level
        self.on_phase = on_phase

        self.session = VoiceSession()
        self.auto_listen = True
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stream: Optional[MicrophoneStream] = None
        self._analyser: Optional[Callable[[np.ndarray], float]] = None
        self._recorder: Optional[SegmentRecorder] = None
        self._silence_timer: Optional[asyncio.TimerHandle] = None
        self._segment_task: Optional[asyncio.Task] = None
        self._generation = 0

    # ── 手动控制 ──

    async def start(self) -> bool:
        """获取麦克风并开始校准；失败时关闭自动收听并返回 False"""
        if self.session.phase != VoicePhase.IDLE:
            return True
        self._loop = asyncio.get_running_loop()
        stream = self.stream_factory()
        try:
            stream.open(self._post_block, self._post_lost)
        except MicrophoneError as e:
            logger.warning(f"❌ 麦克风不可用: {e}")
            self.auto_listen = False
            self.dispatch(PermissionLost())
            self._status(f"Microphone unavailable: {e}")
            return False

        self._stream = stream
        self._analyser = self.analyser_factory()
        self.auto_listen = True
        self.dispatch(Start())
        logger.info("✓ 开始收听，正在校准环境噪声")
        return True

    async def pause(self) -> None:
        self.auto_listen = False
        self.dispatch(Stop())
        logger.info("✓ 已暂停收听")

    async def resume(self) -> bool:
        return await self.start()

    async def stop(self) -> None:
        await self.pause()

    # ── 帧循环 ──

    def _post_block(self, block: np.ndarray) -> None:
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self.process_block, block)

    def _post_lost(self) -> None:
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._on_stream_lost)

    def _on_stream_lost(self) -> None:
        if self._stream is None:
            return
        logger.warning("❌ 麦克风流中断")
        self.auto_listen = False
        self.dispatch(PermissionLost())
        self._status("Microphone disconnected.")

    def process_block(self, block: np.ndarray) -> None:
        # 会话已关闭时丢弃残留的音频块
        if self._stream is None or self._analyser is None:
            return
        amplitude = self._analyser(block)
        if self.on_level is not None:
            self.on_level(level_from_amplitude(amplitude))

        now = self.clock()
        self.dispatch(Frame(amplitude, now))

        if self._recorder is not None:
            self._recorder.append(block)
            if self.session.recording_started_at is not None:
                self._status(f"Recording... {now - self.session.recording_started_at:.1f}s")

    def dispatch(self, event) -> None:
        previous = self.session.phase
        self.session, effects = transition(self.session, event)
        for effect in effects:
            self._apply(effect)
        if self.session.phase != previous:
            logger.debug(f"voice: {previous.value} -> {self.session.phase.value}")
            if self.on_phase is not None:
                self.on_phase(self.session.phase)

    # ── 副作用 ──

    def _apply(self, effect: Effect) -> None:
        if effect == Effect.START_RECORDER:
            self._recorder = SegmentRecorder(self.sample_rate)
            self._status("Hearing you...")
        elif effect == Effect.START_SILENCE_TIMER:
            self._cancel_silence_timer()
            self._silence_timer = self._loop.call_later(self.silence_timeout, self.dispatch, SilenceElapsed())
        elif effect == Effect.CANCEL_SILENCE_TIMER:
            self._cancel_silence_timer()
        elif effect == Effect.FINISH_SEGMENT:
            recorder, self._recorder = self._recorder, None
            self._segment_task = self._loop.create_task(self._finish_segment(recorder, self._generation))
        elif effect == Effect.RELEASE_STREAM:
            self._release()

    def _cancel_silence_timer(self) -> None:
        if self._silence_timer is not None:
            self._silence_timer.cancel()
            self._silence_timer = None

    def _release(self) -> None:
        self._generation += 1
        self._cancel_silence_timer()
        self._recorder = None
        self._analyser = None
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        if self._segment_task is not None and not self._segment_task.done():
            self._segment_task.cancel()
        self._segment_task = None
        if self.on_level is not None:
            self.on_level(0)
        self._status("")

    async def _finish_segment(self, recorder: Optional[SegmentRecorder], generation: int) -> None:
        try:
            audio = recorder.finish() if recorder is not None else b""
            if len(audio) < MIN_SEGMENT_BYTES:
                logger.debug(f"丢弃过短的录音 ({len(audio)} bytes)")
                return

            self._status("Transcribing...")
            try:
                text = await self.transcriber.transcribe(audio)
            except TranscriptionError as e:
                logger.warning(f"❌ 转写失败: {e}")
                self._status(f"❌ {e}")
                await asyncio.sleep(self.error_display)
                return

            if text and generation == self._generation:
                logger.info(f"✓ 听到: {text!r}")
                self._status(f'"{text}"')
                await self.on_command(text)
        except Exception:
            logger.exception("❌ 处理录音片段失败")
            self._status("❌ Something went wrong.")
            await asyncio.sleep(self.error_display)
        finally:
            # 会话已被关闭或重启时不再推进状态
            if generation == self._generation:
                self._status("")
                self.dispatch(TranscriptionFinished())

    def _status(self, text: str) -> None:
        if self.on_status is not None:
            self.on_status(text)
