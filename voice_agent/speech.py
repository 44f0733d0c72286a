"""语音播报：把执行结果读出来"""

import asyncio
import logging
import queue
import threading
import time
from typing import Optional

import pyttsx3

logger = logging.getLogger(__name__)

TTS_RATE = 180
TTS_VOLUME = 0.8
SPEECH_WAIT_SECONDS = 10.0  # 等待播报结束的上限
POLL_SECONDS = 0.05


class Speaker:
    """
    pyttsx3 播报，新的一句总是先打断上一句。
    引擎在后台线程中创建和运行，speak() 不会阻塞事件循环；
    需要等读完再继续的调用方用 wait_done()。
    """

    def __init__(self, rate: int = TTS_RATE, volume: float = TTS_VOLUME):
        self.rate = rate
        self.volume = volume
        self.muted = False
        self._queue: "queue.Queue[Optional[str]]" = queue.Queue()
        self._engine = None
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        # 已入队但还没读完的句数，为 0 时 _idle 置位
        self._pending = 0
        self._idle = threading.Event()
        self._idle.set()

    @property
    def speaking(self) -> bool:
        return not self._idle.is_set()

    def _ensure_worker(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._worker, name="voice-agent-tts", daemon=True)
        self._thread.start()

    def _finished(self, count: int = 1) -> None:
        with self._lock:
            self._pending = max(0, self._pending - count)
            if self._pending == 0:
                self._idle.set()

    def _worker(self) -> None:
        try:
            engine = pyttsx3.init()
            engine.setProperty("rate", self.rate)
            engine.setProperty("volume", self.volume)
        except (RuntimeError, OSError) as e:
            logger.warning(f"⚠ TTS 初始化失败，播报不可用: {e}")
            self._finished(self._drain())
            return
        with self._lock:
            self._engine = engine

        while True:
            text = self._queue.get()
            if text is None:
                break
            try:
                engine.say(text)
                engine.runAndWait()
            except RuntimeError as e:
                logger.warning(f"❌ 播报失败: {e}")
            finally:
                self._finished()

    def _drain(self) -> int:
        """清空队列，返回丢弃的句数"""
        dropped = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is not None:
                dropped += 1
        return dropped

    def stop(self) -> None:
        dropped = self._drain()
        if dropped:
            self._finished(dropped)
        with self._lock:
            engine = self._engine
        if engine is not None:
            try:
                engine.stop()
            except RuntimeError as e:
                logger.debug(f"TTS stop: {e}")

    def speak(self, text: str) -> None:
        if not text:
            return
        self.stop()
        if self.muted:
            return
        logger.info(f"  TTS: {text}")
        with self._lock:
            self._pending += 1
            self._idle.clear()
        self._ensure_worker()
        self._queue.put(text)

    async def wait_done(self, timeout: float = SPEECH_WAIT_SECONDS) -> bool:
        """等当前播报读完；静音或超时立即返回，返回是否已读完"""
        deadline = time.monotonic() + timeout
        while self.speaking and not self.muted:
            if time.monotonic() >= deadline:
                logger.warning(f"⚠ 播报超过 {timeout}s 仍未结束，不再等待")
                return False
            await asyncio.sleep(POLL_SECONDS)
        return True

    def set_muted(self, muted: bool) -> None:
        self.muted = muted
        if muted:
            self.stop()

    def shutdown(self) -> None:
        self.stop()
        if self._thread is not None and self._thread.is_alive():
            self._queue.put(None)
            self._thread.join(timeout=1.5)
