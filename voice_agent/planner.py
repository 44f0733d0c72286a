"""规划模块：调用远程 LLM 把命令解析为一个结构化动作"""

import asyncio
import json
import logging
import re
from typing import Dict, Optional

from openai import AsyncOpenAI, OpenAIError

from .context import ROUTES
from .models import ActionDirective, CommandRequest, Snapshot
from .perception import describe_elements
from .settings import BASE_URL, LLM_TIMEOUT_SECONDS, MODEL_NAME, Settings

logger = logging.getLogger(__name__)

FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


def strip_code_fences(raw: str) -> str:
    return FENCE_RE.sub("", raw).strip()


def build_system_prompt(request: CommandRequest, element_list: str, routes: Dict[str, str]) -> str:
    route_lines = "\n".join(f"{path} — {desc}" for path, desc in routes.items())
    return (
        "You are an accessibility click assistant. Your job is to interpret the user's voice/text command "
        "and match it to the correct interactive element on the current page, or perform a "
        "navigation/scroll/type action.\n\n"
        f"CURRENT PAGE: {request.current_route}\n"
        f"PAGE CONTEXT: {request.context_help}\n\n"
        f"AVAILABLE INTERACTIVE ELEMENTS ON THIS PAGE:\n{element_list}\n\n"
        f"AVAILABLE NAVIGATION ROUTES:\n{route_lines}\n\n"
        "INSTRUCTIONS:\n"
        '1. Analyze the user\'s command (could be voice-transcribed, so handle typos/speech artifacts like "uh", "um").\n'
        '2. Elements with aria-label like "Open course: <title>" are clickable cards. If the user says a card '
        "name (even partially), match it to the closest card.\n"
        "3. Determine the best action:\n"
        '   - "click" — click a specific element. Set element_index to the [index] number from the list above.\n'
        '   - "navigate" — go to a different page. Set navigate_to to the route path.\n'
        '   - "scroll" — scroll the page. Set scroll_direction to "up" or "down".\n'
        '   - "type" — type text into an input. Set element_index to the input\'s index, and type_value to the text.\n'
        '   - "search" — find a search input and type into it. Set search_value to the query.\n'
        '   - "toggle_theme" — switch dark/light mode.\n'
        '   - "go_back" — go to previous page.\n'
        '   - "close" — close a modal or menu (find a close/X/cancel button).\n'
        '   - "help" — list what the user can do on this page.\n'
        '   - "none" — if the command doesn\'t match anything.\n'
        '4. Be smart about matching: "sign out" = Log Out button, "enroll" = Enroll Now button, '
        '"next lesson" = Next button, etc.\n'
        "5. Set confidence from 0.0 to 1.0 based on how certain you are.\n"
        "6. Set element_index to -1 when the action does not target an element.\n\n"
        "RESPOND WITH ONLY valid JSON (no markdown, no code fences):\n"
        '{"action":"click","element_index":5,"explanation":"Clicking the Enroll Now button","confidence":0.95}'
    )


def parse_directive(raw: Optional[str]) -> Optional[ActionDirective]:
    if not raw or not raw.strip():
        return None
    try:
        return ActionDirective.from_wire(json.loads(strip_code_fences(raw)))
    except (json.JSONDecodeError, ValueError) as e:
        logger.warning(f"❌ 远程响应解析失败: {e}, 原始输出: {raw!r}")
        return None


class KeyedClient:
    """按当前凭据懒加载 AsyncOpenAI 客户端，凭据变化时重建"""

    def __init__(self, settings: Settings, timeout: float = LLM_TIMEOUT_SECONDS, client: Optional[AsyncOpenAI] = None):
        self.settings = settings
        self.timeout = timeout
        self._client = client
        self._client_key: Optional[str] = None

    def get(self) -> Optional[AsyncOpenAI]:
        """没有有效凭据时返回 None"""
        api_key = self.settings.api_key()
        if not api_key:
            return None
        if self._client is not None and self._client_key is None:
            # 外部传入的客户端归属于第一次见到的凭据
            self._client_key = api_key
        if self._client is None or self._client_key != api_key:
            self._client = AsyncOpenAI(api_key=api_key, base_url=BASE_URL, timeout=self.timeout, max_retries=0)
            self._client_key = api_key
        return self._client


class RemoteInterpreter:
    """
    远程解释模块。
    只请求一次，不重试；任何失败都返回 None，由调用方改用本地匹配。
    """

    def __init__(
        self,
        settings: Settings,
        model: str = MODEL_NAME,
        client: Optional[AsyncOpenAI] = None,
        timeout: float = LLM_TIMEOUT_SECONDS,
        routes: Optional[Dict[str, str]] = None,
    ):
        self.model = model
        self.timeout = timeout
        self.routes = routes if routes is not None else ROUTES
        self.clients = KeyedClient(settings, timeout, client)

    async def interpret(self, request: CommandRequest, snapshot: Snapshot) -> Optional[ActionDirective]:
        client = self.clients.get()
        if client is None:
            return None

        element_list = describe_elements(snapshot)
        if not element_list.strip():
            return None

        try:
            response = await asyncio.wait_for(
                client.chat.completions.create(
                    model=self.model,
                    temperature=0.1,
                    top_p=0.9,
                    max_tokens=200,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": build_system_prompt(request, element_list, self.routes)},
                        {"role": "user", "content": request.raw_text},
                    ],
                ),
                timeout=self.timeout,
            )
            raw = response.choices[0].message.content
        except asyncio.TimeoutError:
            logger.warning(f"⚠ 远程解释超时 ({self.timeout}s)，改用本地匹配")
            return None
        except OpenAIError as e:
            logger.warning(f"⚠ 远程解释失败，改用本地匹配: {e}")
            return None
        except (AttributeError, IndexError, TypeError) as e:
            logger.warning(f"⚠ 远程响应结构异常: {e}")
            return None

        directive = parse_directive(raw)
        if directive is not None:
            logger.info(f"✓ 远程解释: {directive.action} (index={directive.element_index}, "
                        f"confidence={directive.confidence:.2f})")
        return directive
