"""Playwright 实现：浏览器页面作为可交互界面"""

import logging
from typing import List
from urllib.parse import urljoin, urlparse

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from .context import Navigator, PageContext, help_for_route
from .models import BoundingBox, ElementDescriptor, RawControl
from .perception import InteractiveSurface, SurfaceError

logger = logging.getLogger(__name__)

REF_ATTR = "data-voice-ref"
CARD_ATTR = "data-course-title"
ENGINE_UI_ATTR = "data-accessibility-chatbot"

CONTROL_SELECTOR = (
    'button, a, [role="button"], [role="link"], [role="tab"], [role="menuitem"], '
    "input, select, textarea, [onclick], [tabindex], summary, label[for], "
    '[role="checkbox"], [role="switch"], [role="option"], [role="radio"], '
    f"[{CARD_ATTR}]"
)

SCAN_JS = """
({scanId, selector, refAttr, cardAttr, engineAttr}) => {
    const controls = [];
    let n = 0;
    for (const el of document.querySelectorAll(selector)) {
        const handle = `${scanId}-${n++}`;
        el.setAttribute(refAttr, handle);

        const style = window.getComputedStyle(el);
        const rect = el.getBoundingClientRect();
        const card = el.getAttribute(cardAttr) || '';

        let href = '';
        if (el.tagName === 'A' && el.href) {
            try { href = new URL(el.href, window.location.href).pathname; }
            catch (e) { href = String(el.href).slice(0, 60); }
        }

        controls.push({
            handle,
            tag: el.tagName.toLowerCase(),
            text: card || (el.textContent || '').trim(),
            role: el.getAttribute('role') || '',
            control_type: typeof el.type === 'string' ? el.type : '',
            accessible_label: el.getAttribute('aria-label') || card,
            placeholder: el.getAttribute('placeholder') || '',
            link_target: href,
            box: { x: rect.x, y: rect.y, width: rect.width, height: rect.height },
            in_viewport: rect.top < window.innerHeight && rect.bottom > 0,
            hidden: style.display === 'none' || style.visibility === 'hidden',
            transparent: style.opacity === '0',
            is_card: card !== '',
            in_engine_ui: el.closest(`[${engineAttr}]`) !== null,
        });
    }
    return controls;
}
"""

HIGHLIGHT_JS = """
(el, ms) => {
    const outline = el.style.outline;
    const offset = el.style.outlineOffset;
    el.style.outline = '3px solid #5c7f4c';
    el.style.outlineOffset = '2px';
    setTimeout(() => { el.style.outline = outline; el.style.outlineOffset = offset; }, ms);
}
"""

FOCUS_CLICK_JS = "el => { el.focus(); el.click(); }"

POINTER_CLICK_JS = """
el => {
    const rect = el.getBoundingClientRect();
    const opts = { bubbles: true, clientX: rect.left + rect.width / 2, clientY: rect.top + rect.height / 2 };
    el.dispatchEvent(new PointerEvent('pointerdown', opts));
    el.dispatchEvent(new MouseEvent('mousedown', opts));
    el.dispatchEvent(new PointerEvent('pointerup', opts));
    el.dispatchEvent(new MouseEvent('mouseup', opts));
    el.dispatchEvent(new MouseEvent('click', opts));
}
"""

# 走原生 setter，React 之类的框架才能感知到值变化
SET_VALUE_JS = """
(el, value) => {
    const proto = el.tagName === 'TEXTAREA' ? window.HTMLTextAreaElement.prototype : window.HTMLInputElement.prototype;
    const descriptor = Object.getOwnPropertyDescriptor(proto, 'value');
    if (descriptor && descriptor.set) { descriptor.set.call(el, value); } else { el.value = value; }
    el.dispatchEvent(new Event('input', { bubbles: true }));
    el.dispatchEvent(new Event('change', { bubbles: true }));
}
"""


class PlaywrightSurface(InteractiveSurface):
    """
    扫描时给每个候选元素写入 data-voice-ref="<scan_id>-<n>"。
    后续操作都通过这个属性定位，新一轮扫描会覆盖旧值，
    所以旧快照里的元素再也定位不到，只会报错而不会点错。
    """

    def __init__(self, page: Page):
        self.page = page

    async def scan_controls(self, scan_id: int) -> List[RawControl]:
        try:
            items = await self.page.evaluate(
                SCAN_JS,
                {
                    "scanId": scan_id,
                    "selector": CONTROL_SELECTOR,
                    "refAttr": REF_ATTR,
                    "cardAttr": CARD_ATTR,
                    "engineAttr": ENGINE_UI_ATTR,
                },
            )
        except PlaywrightError as e:
            raise SurfaceError(f"scan failed: {e}") from e

        return [
            RawControl(
                handle=item["handle"],
                tag=item["tag"],
                text=item["text"],
                role=item["role"],
                control_type=item["control_type"],
                accessible_label=item["accessible_label"],
                placeholder=item["placeholder"],
                link_target=item["link_target"],
                box=BoundingBox(**item["box"]),
                in_viewport=item["in_viewport"],
                hidden=item["hidden"],
                transparent=item["transparent"],
                is_card=item["is_card"],
                in_engine_ui=item["in_engine_ui"],
            )
            for item in items
        ]

    async def _evaluate(self, element: ElementDescriptor, script: str, arg=None) -> None:
        locator = self.page.locator(f'[{REF_ATTR}="{element.handle}"]')
        try:
            if await locator.count() == 0:
                raise SurfaceError(f"element [{element.index}] is no longer on the page")
            await locator.first.evaluate(script, arg)
        except PlaywrightError as e:
            raise SurfaceError(str(e)) from e

    async def scroll_into_view(self, element: ElementDescriptor) -> None:
        await self._evaluate(element, "el => el.scrollIntoView({ behavior: 'smooth', block: 'center' })")

    async def highlight(self, element: ElementDescriptor, duration: float) -> None:
        await self._evaluate(element, HIGHLIGHT_JS, int(duration * 1000))

    async def focus_and_click(self, element: ElementDescriptor) -> None:
        await self._evaluate(element, FOCUS_CLICK_JS)

    async def pointer_click(self, element: ElementDescriptor) -> None:
        await self._evaluate(element, POINTER_CLICK_JS)

    async def set_value(self, element: ElementDescriptor, value: str) -> None:
        await self._evaluate(element, SET_VALUE_JS, value)

    async def scroll_by(self, dy: float) -> None:
        try:
            await self.page.evaluate("dy => window.scrollBy({ top: dy, behavior: 'smooth' })", dy)
        except PlaywrightError as e:
            raise SurfaceError(str(e)) from e

    async def press_key(self, key: str) -> None:
        try:
            await self.page.keyboard.press(key)
        except PlaywrightError as e:
            raise SurfaceError(str(e)) from e


class PlaywrightNavigator(Navigator):
    def __init__(self, page: Page):
        self.page = page

    async def navigate_to(self, route: str) -> None:
        try:
            await self.page.goto(urljoin(self.page.url, route))
        except PlaywrightError as e:
            raise SurfaceError(str(e)) from e

    async def go_back(self) -> None:
        try:
            await self.page.go_back()
        except PlaywrightError as e:
            raise SurfaceError(str(e)) from e


class PlaywrightPageContext(PageContext):
    def __init__(self, page: Page):
        self.page = page

    @property
    def current_route(self) -> str:
        return urlparse(self.page.url).path or "/"

    def help_text(self, route: str) -> str:
        return help_for_route(route)
