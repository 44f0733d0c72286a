"""感知模块：扫描当前界面上的可交互元素"""

import logging
from abc import ABC, abstractmethod
from typing import List

from .models import ElementDescriptor, RawControl, Snapshot

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 120  # 元素文本截断长度，控制提示词大小
PROMPT_TEXT_LENGTH = 80
PROMPT_LINK_LENGTH = 60
MAX_PROMPT_ELEMENTS = 150


class SurfaceError(RuntimeError):
    """宿主界面操作失败（元素已失效、脚本执行出错等）"""


class InteractiveSurface(ABC):
    """
    可交互界面的能力接口。
    浏览器（见 surface.PlaywrightSurface）、原生 UI 自动化层、测试替身
    都实现这一组方法，引擎本身不关心宿主是什么。
    """

    @abstractmethod
    async def scan_controls(self, scan_id: int) -> List[RawControl]:
        """按遍历顺序返回候选控件，handle 需包含 scan_id 以区分不同快照"""

    @abstractmethod
    async def scroll_into_view(self, element: ElementDescriptor) -> None:
        ...

    @abstractmethod
    async def highlight(self, element: ElementDescriptor, duration: float) -> None:
        """临时高亮，duration 秒后自动恢复"""

    @abstractmethod
    async def focus_and_click(self, element: ElementDescriptor) -> None:
        ...

    @abstractmethod
    async def pointer_click(self, element: ElementDescriptor) -> None:
        """在元素中心派发 pointer down/up/click 序列"""

    @abstractmethod
    async def set_value(self, element: ElementDescriptor, value: str) -> None:
        """通过框架可感知的方式写值，并触发 input 与 change 事件"""

    @abstractmethod
    async def scroll_by(self, dy: float) -> None:
        ...

    @abstractmethod
    async def press_key(self, key: str) -> None:
        ...


class Perception:
    """
    元素注册表：把宿主返回的原始控件过滤、去重、截断，
    再从 0 开始连续编号，生成一次性的快照。
    """

    def __init__(self, surface: InteractiveSurface):
        self.surface = surface
        self.last_snapshot_id = 0

    async def scan(self) -> Snapshot:
        self.last_snapshot_id += 1
        snapshot_id = self.last_snapshot_id
        raw = await self.surface.scan_controls(snapshot_id)
        snapshot = Snapshot(snapshot_id=snapshot_id, elements=self._build(snapshot_id, raw))
        logger.debug(f"✓ 快照 #{snapshot_id}: {len(snapshot)} 个可交互元素")
        return snapshot

    @staticmethod
    def _build(snapshot_id: int, raw: List[RawControl]) -> List[ElementDescriptor]:
        elements: List[ElementDescriptor] = []
        seen = set()
        for control in raw:
            if control.handle in seen:
                continue
            seen.add(control.handle)

            if control.hidden or control.in_engine_ui:
                continue
            # 卡片在悬停效果下透明度为 0，但仍然允许点击
            if control.transparent and not control.is_card:
                continue
            if control.box is not None and control.box.is_empty:
                continue

            elements.append(
                ElementDescriptor(
                    index=len(elements),
                    snapshot_id=snapshot_id,
                    handle=control.handle,
                    tag=control.tag.lower(),
                    text=" ".join(control.text.split())[:MAX_TEXT_LENGTH],
                    role=control.role,
                    control_type=control.control_type,
                    accessible_label=control.accessible_label,
                    placeholder=control.placeholder,
                    link_target=control.link_target,
                    box=control.box,
                    # 横向滚动列表里的卡片可能在视口外，仍视为可见
                    is_visible=control.is_card or control.in_viewport,
                )
            )
        return elements


def describe_elements(snapshot: Snapshot) -> str:
    """生成给 LLM 看的元素摘要，只包含可见元素"""
    lines = []
    for el in snapshot.visible[:MAX_PROMPT_ELEMENTS]:
        parts = [f"[{el.index}]", f"<{el.tag}>"]
        if el.control_type:
            parts.append(f'type="{el.control_type}"')
        if el.role:
            parts.append(f'role="{el.role}"')
        if el.accessible_label:
            parts.append(f'aria-label="{el.accessible_label}"')
        if el.placeholder:
            parts.append(f'placeholder="{el.placeholder}"')
        if el.text:
            parts.append(f'text="{el.text[:PROMPT_TEXT_LENGTH]}"')
        if el.link_target and el.tag == "a":
            parts.append(f'href="{el.link_target[:PROMPT_LINK_LENGTH]}"')
        lines.append(" ".join(parts))
    return "\n".join(lines)


def list_available_actions(snapshot: Snapshot, limit: int = 30) -> List[str]:
    """当前页面可以说出口的按钮/链接名称"""
    actions: List[str] = []
    for el in snapshot.visible:
        label = el.accessible_label or el.text
        if not label or len(label) < 2 or len(label) > 60:
            continue
        cleaned = " ".join(label.split())
        if cleaned not in actions:
            actions.append(cleaned)
    return actions[:limit]


def find_search_input(snapshot: Snapshot):
    """placeholder 提示为搜索框的 input"""
    for el in snapshot:
        placeholder = el.placeholder.lower()
        if el.tag == "input" and ("search" in placeholder or "find" in placeholder):
            return el
    return None

