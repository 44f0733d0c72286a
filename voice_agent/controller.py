"""执行模块：把解析出的动作作用到当前界面上"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .context import Navigator, PageContext
from .models import ActionDirective, CommandResult, ElementDescriptor, Snapshot
from .perception import InteractiveSurface, SurfaceError, find_search_input

logger = logging.getLogger(__name__)

HIGHLIGHT_SECONDS = 1.5
ACTIVATION_DELAY = 0.3  # 等高亮渲染出来再点击
VALUE_DELAY = 0.1
SCROLL_AMOUNT = 400

Strategy = Callable[[ElementDescriptor], Awaitable[None]]
Handler = Callable[[ActionDirective, Snapshot], Any]


class Controller:
    """执行模块：每种动作一个分支，每个分支都返回 CommandResult 并播报"""

    def __init__(
        self,
        surface: InteractiveSurface,
        navigator: Navigator,
        context: PageContext,
        speaker,
        activation_delay: float = ACTIVATION_DELAY,
        value_delay: float = VALUE_DELAY,
    ):
        self.surface = surface
        self.navigator = navigator
        self.context = context
        self.speaker = speaker
        self.activation_delay = activation_delay
        self.value_delay = value_delay
        # 依次尝试，直到有一个不抛异常
        self.strategies: List[Strategy] = [surface.focus_and_click, surface.pointer_click]
        # 只有这里列出的动作会被执行，其余一律按 none 处理
        self.handlers: Dict[str, Handler] = {
            "click": self._click,
            "navigate": self._navigate,
            "scroll": self._scroll,
            "type": self._type,
            "search": self._search,
            "toggle_theme": self._toggle_theme,
            "go_back": self._go_back,
            "close": self._close,
            "help": self._help,
            "none": self._none,
        }

    async def execute(self, directive: ActionDirective, snapshot: Snapshot) -> CommandResult:
        handler = self.handlers.get(directive.action, self._none)
        result = handler(directive, snapshot)
        if asyncio.iscoroutine(result):
            result = await result

        if result.success:
            logger.info(f"✓ {result.action} {result.target} ".rstrip())
        else:
            logger.info(f"❌ {result.action}: {result.message}")
        self.speaker.speak(result.message)
        return result

    async def activate(self, element: ElementDescriptor) -> bool:
        """滚动到视口、高亮，然后按策略顺序点击"""
        try:
            await self.surface.scroll_into_view(element)
            await self.surface.highlight(element, HIGHLIGHT_SECONDS)
        except SurfaceError as e:
            logger.warning(f"⚠ 高亮 [{element.index}] 失败: {e}")

        await asyncio.sleep(self.activation_delay)
        for strategy in self.strategies:
            try:
                await strategy(element)
                return True
            except SurfaceError as e:
                logger.warning(f"⚠ {getattr(strategy, '__name__', strategy)} [{element.index}] 失败: {e}")
        return False

    async def _fill(self, element: ElementDescriptor, value: str) -> bool:
        await self.activate(element)
        await asyncio.sleep(self.value_delay)
        try:
            await self.surface.set_value(element, value)
            return True
        except SurfaceError as e:
            logger.warning(f"❌ 写入 [{element.index}] 失败: {e}")
            return False

    async def _click(self, directive: ActionDirective, snapshot: Snapshot) -> CommandResult:
        el = snapshot.get(directive.element_index)
        if el is None:
            return CommandResult(False, "click", "", "Element not found.", 0.0)
        if not await self.activate(el):
            return CommandResult(False, "click", el.label, f'Could not click "{el.label}".', 0.0)
        message = directive.explanation or f'Clicking "{el.label}".'
        return CommandResult(True, "click", el.label, message, directive.confidence)

    async def _navigate(self, directive: ActionDirective, snapshot: Snapshot) -> CommandResult:
        route = directive.route or "/"
        link = next((el for el in snapshot if el.tag == "a" and el.link_target == route), None)
        if link is None or not await self.activate(link):
            try:
                await self.navigator.navigate_to(route)
            except SurfaceError as e:
                logger.warning(f"❌ 导航失败: {e}")
                return CommandResult(False, "navigate", route, f"Could not navigate to {route}.", 0.0)
        message = directive.explanation or f"Navigating to {route}."
        return CommandResult(True, "navigate", route, message, directive.confidence)

    async def _scroll(self, directive: ActionDirective, snapshot: Snapshot) -> CommandResult:
        direction = "up" if directive.direction in ("up", "top") else "down"
        try:
            await self.surface.scroll_by(-SCROLL_AMOUNT if direction == "up" else SCROLL_AMOUNT)
        except SurfaceError as e:
            logger.warning(f"❌ 滚动失败: {e}")
            return CommandResult(False, "scroll", direction, f"Could not scroll {direction}.", 0.0)
        message = directive.explanation or f"Scrolling {direction}."
        return CommandResult(True, "scroll", direction, message, directive.confidence)

    async def _type(self, directive: ActionDirective, snapshot: Snapshot) -> CommandResult:
        el = snapshot.get(directive.element_index)
        if el is None or not directive.value:
            return CommandResult(False, "type", "", "No input field found.", 0.0)
        if not await self._fill(el, directive.value):
            return CommandResult(False, "type", directive.value, f'Could not type into "{el.label}".', 0.0)
        message = directive.explanation or f'Typing "{directive.value}".'
        return CommandResult(True, "type", directive.value, message, directive.confidence)

    async def _search(self, directive: ActionDirective, snapshot: Snapshot) -> CommandResult:
        query = directive.query or ""
        el = snapshot.get(directive.element_index) or find_search_input(snapshot)
        if el is None:
            return CommandResult(False, "search", query, "No search field found.", 0.0)
        if not await self._fill(el, query):
            return CommandResult(False, "search", query, "Could not type into the search field.", 0.0)
        message = directive.explanation or f'Searching for "{query}".'
        return CommandResult(True, "search", query, message, directive.confidence)

    async def _toggle_theme(self, directive: ActionDirective, snapshot: Snapshot) -> CommandResult:
        button = next(
            (el for el in snapshot
             if "theme" in el.accessible_label.lower() or "toggle" in el.accessible_label.lower()),
            None,
        )
        if button is None or not await self.activate(button):
            return CommandResult(False, "toggle_theme", "theme", "Theme toggle not found.", 0.0)
        return CommandResult(True, "toggle_theme", "theme", directive.explanation or "Toggling theme.",
                             directive.confidence)

    async def _go_back(self, directive: ActionDirective, snapshot: Snapshot) -> CommandResult:
        try:
            await self.navigator.go_back()
        except SurfaceError as e:
            logger.warning(f"❌ 返回失败: {e}")
            return CommandResult(False, "go_back", "", "Could not go back.", 0.0)
        return CommandResult(True, "go_back", "", directive.explanation or "Going back.", directive.confidence)

    async def _close(self, directive: ActionDirective, snapshot: Snapshot) -> CommandResult:
        message = directive.explanation or "Closing."
        el = snapshot.get(directive.element_index) or self._find_close_control(snapshot)
        if el is not None and await self.activate(el):
            return CommandResult(True, "close", el.label, message, directive.confidence)

        try:
            await self.surface.press_key("Escape")
        except SurfaceError as e:
            logger.warning(f"❌ Escape 失败: {e}")
            return CommandResult(False, "close", "", "Nothing to close.", 0.0)
        return CommandResult(True, "close", "", "Sent Escape key.", 0.5)

    @staticmethod
    def _find_close_control(snapshot: Snapshot) -> Optional[ElementDescriptor]:
        for el in snapshot:
            label = el.accessible_label.lower()
            text = el.text.lower()
            if "close" in label or text in ("x", "×") or "cancel" in text or "close" in text:
                return el
        return None

    def _help(self, directive: ActionDirective, snapshot: Snapshot) -> CommandResult:
        route = self.context.current_route
        return CommandResult(True, "help", route, self.context.help_text(route), directive.confidence)

    def _none(self, directive: ActionDirective, snapshot: Snapshot) -> CommandResult:
        message = directive.explanation or "I couldn't match that to any action. Try \"help\" for options."
        return CommandResult(False, "none", "", message, 0.0)
