"""语音命令引擎核心类"""

import logging
import time
from typing import List, Optional

from .context import Navigator, PageContext
from .controller import Controller
from .matcher import LocalMatcher
from .models import CommandRequest, CommandResult
from .perception import InteractiveSurface, Perception, list_available_actions
from .planner import RemoteInterpreter
from .settings import API_KEY_PREFIX, Settings
from .speech import SPEECH_WAIT_SECONDS, Speaker

logger = logging.getLogger(__name__)


class CommandEngine:
    """
    一条命令的完整流程：
      1. 感知：扫描当前界面，得到带编号的元素快照
      2. 解释：远程 LLM 解析命令，失败时改用本地匹配
      3. 执行：作用到界面上，并播报结果
    同一时间只处理一条命令（包括确认语播报期间），处理中收到的新命令直接忽略。
    """

    def __init__(
        self,
        surface: InteractiveSurface,
        navigator: Navigator,
        context: PageContext,
        speaker: Optional[Speaker] = None,
        settings: Optional[Settings] = None,
        interpreter: Optional[RemoteInterpreter] = None,
        matcher: Optional[LocalMatcher] = None,
        controller: Optional[Controller] = None,
        speech_timeout: float = SPEECH_WAIT_SECONDS,
    ):
        self.context = context
        self.speaker = speaker or Speaker()
        self.settings = settings or Settings()
        self.perception = Perception(surface)
        self.interpreter = interpreter or RemoteInterpreter(self.settings, routes=context.routes)
        self.matcher = matcher or LocalMatcher(routes=context.routes)
        self.controller = controller or Controller(surface, navigator, context, self.speaker)
        self.speech_timeout = speech_timeout
        self.processing = False

    async def submit(self, text: str) -> CommandResult:
        if self.processing:
            logger.info(f"⚠ 上一条命令仍在处理，忽略: {text!r}")
            return CommandResult(False, "none", "", "Still working on the previous command.", 0.0)
        if not text or not text.strip():
            return CommandResult(False, "none", "", "I didn't catch that.", 0.0)

        self.processing = True
        try:
            route = self.context.current_route
            request = CommandRequest(
                raw_text=text.strip(),
                current_route=route,
                context_help=self.context.help_text(route),
                timestamp=time.time(),
            )
            logger.info(f"命令: {request.raw_text!r} @ {route}")

            # 1. 感知
            snapshot = await self.perception.scan()
            logger.info(f"✓ 扫描到 {len(snapshot)} 个可交互元素")

            # 2. 解释（远程优先）
            directive = await self.interpreter.interpret(request, snapshot)
            if directive is None:
                directive = self.matcher.resolve(request, snapshot)
                logger.info(f"本地匹配: {directive.action} (index={directive.element_index}, "
                            f"confidence={directive.confidence:.2f})")

            # 3. 执行
            result = await self.controller.execute(directive, snapshot)

            # 4. 等播报读完再放行，避免麦克风把确认语当成新命令
            await self.speaker.wait_done(self.speech_timeout)
            return result
        except Exception:
            logger.exception(f"❌ 处理命令失败: {text!r}")
            return CommandResult(False, "none", "", "Something went wrong. Please try again.", 0.0)
        finally:
            self.processing = False

    async def click_label(self, label: str) -> CommandResult:
        return await self.submit(f"click {label}")

    async def available_actions(self, limit: int = 30) -> List[str]:
        try:
            snapshot = await self.perception.scan()
        except Exception:
            logger.exception("❌ 扫描可用操作失败")
            return []
        return list_available_actions(snapshot, limit)

    def set_api_key(self, key: str) -> CommandResult:
        if not self.settings.set_api_key(key):
            return CommandResult(False, "none", "", f"That doesn't look like a Groq key (it should start with {API_KEY_PREFIX}).", 0.0)
        logger.info("✓ 已保存新的 API key")
        return CommandResult(True, "none", "", "API key saved. Smart command interpretation is on.", 1.0)

    def set_muted(self, muted: bool) -> None:
        self.speaker.set_muted(muted)
