"""数据模型定义"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


# 远程解释器与执行模块共用的动作名（即 JSON 协议中的 action 字段）
ACTION_KINDS = (
    "click",
    "navigate",
    "scroll",
    "type",
    "search",
    "toggle_theme",
    "go_back",
    "close",
    "help",
    "none",
)


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    @property
    def center(self):
        return self.x + self.width / 2, self.y + self.height / 2

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 and self.height <= 0


@dataclass
class RawControl:
    """宿主界面扫描出的原始控件，尚未过滤和编号"""
    handle: str  # 宿主侧引用，用于去重和回查元素
    tag: str
    text: str
    role: str = ""
    control_type: str = ""
    accessible_label: str = ""
    placeholder: str = ""
    link_target: str = ""
    box: Optional[BoundingBox] = None
    in_viewport: bool = True
    hidden: bool = False  # display:none / visibility:hidden
    transparent: bool = False  # opacity 为 0
    is_card: bool = False  # 页面标记为可点击的卡片（悬停才显示）
    in_engine_ui: bool = False  # 位于语音助手自身的界面内


@dataclass(frozen=True)
class ElementDescriptor:
    """单个可交互元素的快照，index 只在所属快照内有效"""
    index: int
    snapshot_id: int
    handle: str
    tag: str
    text: str
    role: str
    control_type: str
    accessible_label: str
    placeholder: str
    link_target: str
    box: Optional[BoundingBox]
    is_visible: bool

    @property
    def label(self) -> str:
        """给用户看的名字"""
        return self.accessible_label or self.text[:40] or self.tag


@dataclass(frozen=True)
class Snapshot:
    """一次扫描得到的元素列表"""
    snapshot_id: int
    elements: List[ElementDescriptor] = field(default_factory=list)

    def get(self, index: Optional[int]) -> Optional[ElementDescriptor]:
        if index is None or index < 0 or index >= len(self.elements):
            return None
        return self.elements[index]

    @property
    def visible(self) -> List[ElementDescriptor]:
        return [el for el in self.elements if el.is_visible]

    def __len__(self):
        return len(self.elements)

    def __iter__(self):
        return iter(self.elements)


@dataclass(frozen=True)
class CommandRequest:
    raw_text: str
    current_route: str
    context_help: str
    timestamp: float


@dataclass(frozen=True)
class ActionDirective:
    """解析出的结构化意图，每条命令只产生一个"""
    action: str  # ACTION_KINDS 之一
    explanation: str = ""
    confidence: float = 0.0
    element_index: Optional[int] = None
    route: Optional[str] = None
    direction: Optional[str] = None
    value: Optional[str] = None  # type 的输入内容
    query: Optional[str] = None  # search 的查询内容

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "ActionDirective":
        """
        从远程模型返回的 JSON 对象构造。
        字段缺失或类型不对时抛出 ValueError。
        """
        if not isinstance(data, dict):
            raise ValueError(f"directive must be an object, got {type(data).__name__}")

        action = str(data.get("action", "")).strip().lower()
        if action not in ACTION_KINDS:
            raise ValueError(f"unknown action: {action!r}")

        raw_index = data.get("element_index", -1)
        try:
            index = int(raw_index) if raw_index is not None else -1
        except (TypeError, ValueError):
            raise ValueError(f"bad element_index: {raw_index!r}")

        try:
            confidence = float(data.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0

        return cls(
            action=action,
            explanation=str(data.get("explanation") or ""),
            confidence=max(0.0, min(1.0, confidence)),
            element_index=index if index >= 0 else None,
            route=data.get("navigate_to") or None,
            direction=data.get("scroll_direction") or None,
            value=data.get("type_value") or None,
            query=data.get("search_value") or None,
        )


@dataclass(frozen=True)
class CommandResult:
    success: bool
    action: str
    target: str
    message: str
    confidence: float


class VoicePhase(str, Enum):
    IDLE = "idle"
    CALIBRATING = "calibrating"
    ARMED = "armed"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"


@dataclass(frozen=True)
class VoiceSession:
    """语音采集会话状态，由 voice.transition 推进"""
    phase: VoicePhase = VoicePhase.IDLE
    ambient_level: float = 0.0
    calibration_frames: int = 0
    speech_threshold: float = 25.0
    recording_started_at: Optional[float] = None
    silence_pending: bool = False
    is_processing: bool = False
