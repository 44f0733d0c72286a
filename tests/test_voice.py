"""语音采集测试：纯状态机 + 用假麦克风驱动的控制器"""

import asyncio
import io
import wave
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from conftest import hang
from voice_agent.models import VoicePhase, VoiceSession
from voice_agent.voice import (
    CALIBRATION_FRAMES,
    MAX_RECORD_SECONDS,
    MIN_SPEECH_THRESHOLD,
    Effect,
    Frame,
    MicrophoneError,
    PermissionLost,
    SegmentRecorder,
    SilenceElapsed,
    SpectrumAnalyser,
    Start,
    Stop,
    Transcriber,
    TranscriptionError,
    TranscriptionFinished,
    VoiceCapture,
    level_from_amplitude,
    transition,
)


def feed(session, events):
    effects = []
    for event in events:
        session, fx = transition(session, event)
        effects.extend(fx)
    return session, effects


def armed(ambient=10.0):
    session, _ = feed(VoiceSession(), [Start()] + [Frame(ambient, 0.0)] * CALIBRATION_FRAMES)
    return session


class TestTransition:

    def test_start_only_from_idle(self):
        session, _ = transition(VoiceSession(), Start())
        assert session.phase == VoicePhase.CALIBRATING
        again, effects = transition(armed(), Start())
        assert again.phase == VoicePhase.ARMED
        assert effects == []

    def test_calibration_fixes_threshold(self):
        session, _ = feed(VoiceSession(), [Start()] + [Frame(10.0, 0.0)] * (CALIBRATION_FRAMES - 1))
        assert session.phase == VoicePhase.CALIBRATING

        session, _ = transition(session, Frame(10.0, 0.0))
        assert session.phase == VoicePhase.ARMED
        assert session.speech_threshold == pytest.approx(20.0)

        # 之后的帧不再改变阈值
        later, _ = feed(session, [Frame(5.0, 1.0), Frame(90.0, 1.1), Frame(1.0, 1.2)])
        assert later.speech_threshold == pytest.approx(20.0)

    def test_quiet_room_uses_minimum_threshold(self):
        assert armed(ambient=2.0).speech_threshold == MIN_SPEECH_THRESHOLD

    def test_speech_starts_recording(self):
        session, effects = transition(armed(), Frame(21.0, 5.0))
        assert session.phase == VoicePhase.RECORDING
        assert session.recording_started_at == 5.0
        assert effects == [Effect.START_RECORDER]

    def test_silence_transcribes_exactly_once(self):
        session, _ = transition(armed(), Frame(21.0, 0.0))
        session, effects = feed(session, [Frame(21.0, 0.1 * i) for i in range(1, 10)])
        assert effects == []

        session, effects = feed(session, [Frame(5.0, 1.0), Frame(4.0, 1.1), Frame(3.0, 1.2)])
        assert effects == [Effect.START_SILENCE_TIMER]

        session, effects = feed(session, [SilenceElapsed(), SilenceElapsed(), Frame(3.0, 3.0)])
        assert session.phase == VoicePhase.TRANSCRIBING
        assert session.is_processing
        assert effects.count(Effect.FINISH_SEGMENT) == 1

    def test_renewed_speech_cancels_silence_timer(self):
        session, _ = feed(armed(), [Frame(21.0, 0.0), Frame(5.0, 0.5)])
        assert session.silence_pending
        session, effects = transition(session, Frame(25.0, 0.6))
        assert effects == [Effect.CANCEL_SILENCE_TIMER]
        assert not session.silence_pending
        # 取消后到期的定时器不再生效
        session, effects = transition(session, SilenceElapsed())
        assert session.phase == VoicePhase.RECORDING
        assert effects == []

    def test_in_between_amplitude_keeps_timer(self):
        session, _ = feed(armed(), [Frame(21.0, 0.0), Frame(5.0, 0.5)])
        session, effects = transition(session, Frame(15.0, 0.6))
        assert session.silence_pending
        assert effects == []

    def test_max_duration_forces_stop(self):
        session, _ = transition(armed(), Frame(30.0, 0.0))
        frames = [Frame(30.0, t / 10) for t in range(1, int(MAX_RECORD_SECONDS * 10) + 2)]
        session, effects = feed(session, frames)
        assert session.phase == VoicePhase.TRANSCRIBING
        assert effects == [Effect.FINISH_SEGMENT]

    def test_no_recording_while_processing(self):
        session, _ = feed(armed(), [Frame(30.0, 0.0), Frame(1.0, 0.1), SilenceElapsed()])
        assert session.phase == VoicePhase.TRANSCRIBING
        session, effects = transition(session, Frame(99.0, 0.5))
        assert session.phase == VoicePhase.TRANSCRIBING
        assert effects == []

        session, _ = transition(session, TranscriptionFinished())
        assert session.phase == VoicePhase.ARMED
        assert not session.is_processing

    def test_stop_and_permission_loss_reset(self):
        for event in (Stop(), PermissionLost()):
            session, effects = feed(armed(), [Frame(30.0, 0.0), event])
            assert session == VoiceSession()
            assert Effect.RELEASE_STREAM in effects


class TestAudio:

    def test_level(self):
        assert level_from_amplitude(0) == 0
        assert level_from_amplitude(64) == 50
        assert level_from_amplitude(128) == 100
        assert level_from_amplitude(255) == 100

    def test_analyser_silence_and_tone(self):
        n = np.arange(256)
        silence = np.zeros(256, dtype=np.int16)
        quiet = (np.sin(2 * np.pi * 20 * n / 256) * 30).astype(np.int16)
        loud = (np.sin(2 * np.pi * 20 * n / 256) * 20000).astype(np.int16)

        assert SpectrumAnalyser()(silence) == 0.0
        assert SpectrumAnalyser()(loud) > SpectrumAnalyser()(quiet)
        assert 0.0 <= SpectrumAnalyser()(loud) <= 255.0

    def test_recorder_wav(self):
        recorder = SegmentRecorder(16000)
        assert recorder.finish() == b""

        recorder.append(np.ones(800, dtype=np.int16))
        recorder.append(np.ones(800, dtype=np.int16))
        audio = recorder.finish()
        with wave.open(io.BytesIO(audio)) as wav:
            assert wav.getnchannels() == 1
            assert wav.getframerate() == 16000
            assert wav.getnframes() == 1600


class TestTranscriber:

    def make(self, settings, **kwargs):
        client = MagicMock()
        client.audio.transcriptions.create = AsyncMock(**kwargs)
        return Transcriber(settings, client=client, timeout=0.05), client

    def test_returns_text(self, keyed_settings):
        transcriber, client = self.make(keyed_settings, return_value=SimpleNamespace(text="  go back "))
        assert asyncio.run(transcriber.transcribe(b"RIFF")) == "go back"
        kwargs = client.audio.transcriptions.create.call_args.kwargs
        assert kwargs["file"] == ("audio.wav", b"RIFF")
        assert kwargs["language"] == "en"

    def test_no_key(self, settings):
        transcriber, client = self.make(settings)
        with pytest.raises(TranscriptionError):
            asyncio.run(transcriber.transcribe(b"RIFF"))
        client.audio.transcriptions.create.assert_not_called()

    def test_timeout(self, keyed_settings):
        transcriber, _ = self.make(keyed_settings, side_effect=hang)
        with pytest.raises(TranscriptionError):
            asyncio.run(transcriber.transcribe(b"RIFF"))


# ── 控制器 ──

class FakeStream:
    def __init__(self, fail=False):
        self.fail = fail
        self.opened = False
        self.closed = False

    def open(self, on_block, on_lost):
        if self.fail:
            raise MicrophoneError("Permission denied")
        self.opened = True
        self.on_lost = on_lost

    def close(self):
        self.closed = True


def block(amplitude, samples=10):
    return np.full(samples, amplitude, dtype=np.int16)


class Harness:
    """假麦克风：每个音频块第一个采样的值就是振幅"""

    def __init__(self, transcribe=None, fail=False, on_command=None):
        self.streams = []
        self.statuses = []
        self.phases = []
        self.transcriber = MagicMock()
        self.transcriber.transcribe = transcribe or AsyncMock(return_value="go back")
        self.on_command = on_command or AsyncMock()

        def stream_factory():
            stream = FakeStream(fail)
            self.streams.append(stream)
            return stream

        self.capture = VoiceCapture(
            self.transcriber,
            self.on_command,
            stream_factory=stream_factory,
            analyser_factory=lambda: (lambda b: float(b[0])),
            clock=lambda: 0.0,
            silence_timeout=0.01,
            error_display=0,
            on_status=self.statuses.append,
            on_phase=self.phases.append,
        )

    async def calibrate(self, ambient=5):
        await self.capture.start()
        for _ in range(CALIBRATION_FRAMES):
            self.capture.process_block(block(ambient))

    async def utterance(self, samples):
        self.capture.process_block(block(40, samples))
        self.capture.process_block(block(1, 10))
        await asyncio.sleep(0.05)
        # 让转写任务跑完
        await asyncio.sleep(0.01)


class TestVoiceCapture:

    def test_full_utterance_submits_command(self):
        h = Harness()

        async def scenario():
            await h.calibrate()
            assert h.capture.session.phase == VoicePhase.ARMED
            await h.utterance(samples=2000)

        asyncio.run(scenario())
        h.transcriber.transcribe.assert_awaited_once()
        h.on_command.assert_awaited_once_with("go back")
        assert h.capture.session.phase == VoicePhase.ARMED
        assert VoicePhase.TRANSCRIBING in h.phases
        assert "Hearing you..." in h.statuses

    def test_short_segment_discarded(self):
        h = Harness()

        async def scenario():
            await h.calibrate()
            await h.utterance(samples=10)

        asyncio.run(scenario())
        h.transcriber.transcribe.assert_not_called()
        h.on_command.assert_not_called()
        assert h.capture.session.phase == VoicePhase.ARMED

    def test_transcription_error_returns_to_armed(self):
        h = Harness(transcribe=AsyncMock(side_effect=TranscriptionError("Whisper API error: 500")))

        async def scenario():
            await h.calibrate()
            await h.utterance(samples=2000)

        asyncio.run(scenario())
        h.on_command.assert_not_called()
        assert h.capture.session.phase == VoicePhase.ARMED
        assert any(s.startswith("❌") for s in h.statuses)

    def test_permission_denied_disables_auto_listen(self):
        h = Harness(fail=True)
        started = asyncio.run(h.capture.start())
        assert not started
        assert not h.capture.auto_listen
        assert h.capture.session.phase == VoicePhase.IDLE
        assert any("Microphone unavailable" in s for s in h.statuses)

    def test_stream_lost_mid_session(self):
        h = Harness()

        async def scenario():
            await h.calibrate()
            h.streams[0].on_lost()
            await asyncio.sleep(0.01)

        asyncio.run(scenario())
        assert h.capture.session.phase == VoicePhase.IDLE
        assert not h.capture.auto_listen
        assert h.streams[0].closed

    def test_pause_and_resume_recalibrate(self):
        h = Harness()

        async def scenario():
            await h.calibrate(ambient=30)
            assert h.capture.session.speech_threshold == 60

            await h.capture.pause()
            assert h.capture.session.phase == VoicePhase.IDLE
            assert h.streams[0].closed
            # 暂停后残留的音频块被丢弃
            h.capture.process_block(block(99))
            assert h.capture.session.phase == VoicePhase.IDLE

            assert await h.capture.resume()
            assert h.capture.session.phase == VoicePhase.CALIBRATING
            assert h.capture.session.calibration_frames == 0
            for _ in range(CALIBRATION_FRAMES):
                h.capture.process_block(block(5))

        asyncio.run(scenario())
        assert len(h.streams) == 2
        assert h.capture.session.speech_threshold == MIN_SPEECH_THRESHOLD

    def test_pause_during_transcription_drops_result(self):
        async def scenario():
            gate = asyncio.Event()

            async def slow_transcribe(audio):
                await gate.wait()
                return "scroll down"

            h = Harness(transcribe=AsyncMock(side_effect=slow_transcribe))
            await h.calibrate()
            h.capture.process_block(block(40, 2000))
            h.capture.process_block(block(1, 10))
            await asyncio.sleep(0.05)
            assert h.capture.session.phase == VoicePhase.TRANSCRIBING

            await h.capture.pause()
            gate.set()
            await asyncio.sleep(0.01)
            return h

        h = asyncio.run(scenario())
        h.on_command.assert_not_called()
        assert h.capture.session.phase == VoicePhase.IDLE

    def test_command_failure_returns_to_armed(self):
        h = Harness(on_command=AsyncMock(side_effect=RuntimeError("boom")))

        async def scenario():
            await h.calibrate()
            await h.utterance(samples=2000)

        asyncio.run(scenario())
        h.on_command.assert_awaited_once_with("go back")
        assert h.capture.session.phase == VoicePhase.ARMED
        assert "❌ Something went wrong." in h.statuses

    def test_no_rearm_until_command_done(self):
        async def scenario():
            gate = asyncio.Event()

            async def slow_command(text):
                # 例如还在播报确认语
                await gate.wait()

            h = Harness(on_command=AsyncMock(side_effect=slow_command))
            await h.calibrate()
            await h.utterance(samples=2000)
            assert h.capture.session.phase == VoicePhase.TRANSCRIBING

            # 期间的声音不能开始新的录音
            h.capture.process_block(block(40, 2000))
            assert h.capture.session.phase == VoicePhase.TRANSCRIBING

            gate.set()
            await asyncio.sleep(0.01)
            return h

        h = asyncio.run(scenario())
        h.on_command.assert_awaited_once_with("go back")
        assert h.capture.session.phase == VoicePhase.ARMED
