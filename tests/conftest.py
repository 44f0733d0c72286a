"""测试共用的假对象：不碰网络、浏览器和声卡"""

import asyncio
import os
import sys
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from voice_agent.context import Navigator, StaticPageContext
from voice_agent.models import BoundingBox, RawControl, Snapshot
from voice_agent.perception import InteractiveSurface, Perception, SurfaceError
from voice_agent.settings import Settings, SettingsStore

VALID_KEY = "gsk_test_key_123"


def control(handle, tag="button", text="", **kwargs) -> RawControl:
    kwargs.setdefault("box", BoundingBox(0, 0, 100, 20))
    return RawControl(handle=handle, tag=tag, text=text, **kwargs)


def snapshot_of(*controls, snapshot_id=1) -> Snapshot:
    return Snapshot(snapshot_id, Perception._build(snapshot_id, list(controls)))


class FakeSurface(InteractiveSurface):
    """记录每次调用；failing 中列出的方法名会抛 SurfaceError"""

    def __init__(self, controls=None, failing=()):
        self.controls = list(controls or [])
        self.failing = set(failing)
        self.calls = []
        self.scan_ids = []
        self.gate = None  # asyncio.Event，设置后点击会等待它

    async def scan_controls(self, scan_id):
        self.scan_ids.append(scan_id)
        return list(self.controls)

    async def _record(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.failing:
            raise SurfaceError(f"{name} failed")

    async def scroll_into_view(self, element):
        await self._record("scroll_into_view", element.handle)

    async def highlight(self, element, duration):
        await self._record("highlight", element.handle)

    async def focus_and_click(self, element):
        if self.gate is not None:
            await self.gate.wait()
        await self._record("focus_and_click", element.handle)

    async def pointer_click(self, element):
        await self._record("pointer_click", element.handle)

    async def set_value(self, element, value):
        await self._record("set_value", element.handle, value)

    async def scroll_by(self, dy):
        await self._record("scroll_by", dy)

    async def press_key(self, key):
        await self._record("press_key", key)

    def called(self, name):
        return [c for c in self.calls if c[0] == name]


class FakeNavigator(Navigator):
    def __init__(self):
        self.visited = []
        self.back_count = 0

    async def navigate_to(self, route):
        self.visited.append(route)

    async def go_back(self):
        self.back_count += 1


class FakeSpeaker:
    def __init__(self):
        self.spoken = []
        self.muted = False
        self.waits = 0

    def speak(self, text):
        if not self.muted:
            self.spoken.append(text)

    def set_muted(self, muted):
        self.muted = muted

    async def wait_done(self, timeout=None):
        self.waits += 1
        return True


def chat_response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def fake_openai(content=None, side_effect=None):
    """假的 AsyncOpenAI：chat.completions.create 和 audio.transcriptions.create 都是 AsyncMock"""
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=chat_response(content), side_effect=side_effect)
    client.audio.transcriptions.create = AsyncMock(return_value=SimpleNamespace(text=""))
    return client


async def hang(*args, **kwargs):
    await asyncio.sleep(10)


@pytest.fixture
def settings(tmp_path, monkeypatch):
    """没有任何 API key 的设置"""
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    return Settings(SettingsStore(str(tmp_path / "settings.json")))


@pytest.fixture
def keyed_settings(settings):
    settings.set_api_key(VALID_KEY)
    return settings


@pytest.fixture
def context():
    return StaticPageContext("/")


@pytest.fixture
def navigator():
    return FakeNavigator()


@pytest.fixture
def speaker():
    return FakeSpeaker()
