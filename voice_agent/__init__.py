"""Voice UI Agent 包

包含各个模块：
- models: 数据模型
- perception: 感知模块（元素注册表）
- surface: Playwright 界面实现
- planner: 规划模块（远程解释）
- matcher: 本地兜底匹配
- controller: 执行模块
- speech: 语音播报
- voice: 语音采集
- context: 页面上下文
- settings: 配置
- core: 核心命令引擎
"""

from .models import ActionDirective, CommandRequest, CommandResult, ElementDescriptor, Snapshot, VoicePhase, VoiceSession
from .context import QUICK_COMMANDS, Navigator, PageContext, StaticPageContext
from .perception import InteractiveSurface, Perception, SurfaceError, list_available_actions
from .planner import RemoteInterpreter
from .matcher import LocalMatcher
from .controller import Controller
from .speech import Speaker
from .voice import MicrophoneError, Transcriber, TranscriptionError, VoiceCapture
from .settings import Settings, SettingsStore, configure_logging
from .core import CommandEngine

__all__ = [
    "ActionDirective",
    "CommandRequest",
    "CommandResult",
    "ElementDescriptor",
    "Snapshot",
    "VoicePhase",
    "VoiceSession",
    "QUICK_COMMANDS",
    "Navigator",
    "PageContext",
    "StaticPageContext",
    "InteractiveSurface",
    "Perception",
    "SurfaceError",
    "list_available_actions",
    "RemoteInterpreter",
    "LocalMatcher",
    "Controller",
    "Speaker",
    "MicrophoneError",
    "Transcriber",
    "TranscriptionError",
    "VoiceCapture",
    "Settings",
    "SettingsStore",
    "configure_logging",
    "CommandEngine",
]
