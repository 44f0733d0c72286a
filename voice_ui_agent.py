"""
Voice UI Agent - 基于 Playwright + Groq 的语音无障碍操作助手

打开一个有界面的 Chromium 页面，然后：
  - 麦克风自动收听，说完一句话后自动转写并执行
  - 也可以直接在终端输入命令，例如 "click enroll"、"go to explore"、"scroll down"

终端控制命令：
  /mute /unmute     关闭/打开语音播报
  /pause /resume    暂停/恢复收听
  /actions          列出当前页面可点击的内容
  /key <gsk_...>    保存 Groq API key
  /quit             退出

运行示例：
    playwright install chromium
    python voice_ui_agent.py http://localhost:5173
"""

import asyncio
import logging
import sys

from playwright.async_api import async_playwright

from voice_agent import CommandEngine, Settings, Speaker, Transcriber, VoiceCapture, configure_logging
from voice_agent.context import QUICK_COMMANDS
from voice_agent.surface import PlaywrightNavigator, PlaywrightPageContext, PlaywrightSurface

logger = logging.getLogger("voice_ui_agent")

DEFAULT_START_URL = "http://localhost:5173"
PAGE_LOAD_SECONDS = 2


def print_result(result) -> None:
    marker = "✓" if result.success else "❌"
    print(f"{marker} {result.message}")


async def handle_control(line: str, engine: CommandEngine, capture: VoiceCapture) -> bool:
    """处理 / 开头的终端控制命令，返回 False 表示退出"""
    command, _, arg = line.partition(" ")
    if command == "/quit":
        return False
    if command == "/mute":
        engine.set_muted(True)
        print("✓ Voice feedback muted")
    elif command == "/unmute":
        engine.set_muted(False)
        print("✓ Voice feedback on")
    elif command == "/pause":
        await capture.pause()
        print("✓ Listening paused")
    elif command == "/resume":
        if await capture.resume():
            print("✓ Listening resumed")
    elif command == "/actions":
        actions = await engine.available_actions()
        print("Available on this page: " + (", ".join(actions) if actions else "(nothing found)"))
    elif command == "/key":
        print_result(engine.set_api_key(arg.strip()))
    else:
        print("Unknown control. Try /mute /unmute /pause /resume /actions /key /quit")
    return True


async def run_agent(start_url: str) -> None:
    """
    主循环：语音采集在后台运行，终端输入在前台读取。
    """
    settings = Settings()
    if not settings.has_api_key():
        logger.warning("⚠ 没有配置 GROQ_API_KEY，只能使用本地匹配，语音转写不可用。可以用 /key 设置")

    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=False)
        page = await browser.new_page()
        await page.goto(start_url)
        await asyncio.sleep(PAGE_LOAD_SECONDS)  # 等待页面加载

        speaker = Speaker()
        engine = CommandEngine(
            surface=PlaywrightSurface(page),
            navigator=PlaywrightNavigator(page),
            context=PlaywrightPageContext(page),
            speaker=speaker,
            settings=settings,
        )

        async def on_voice_command(text: str):
            print(f'🎤 "{text}"')
            result = await engine.submit(text)
            print_result(result)
            return result

        def on_status(text: str) -> None:
            if text:
                logger.debug(f"voice: {text}")

        capture = VoiceCapture(
            Transcriber(settings),
            on_voice_command,
            on_status=on_status,
            on_phase=lambda phase: logger.info(f"voice phase: {phase.value}"),
        )
        await capture.start()

        print("Try: " + ", ".join(f'"{q["command"]}"' for q in QUICK_COMMANDS))
        try:
            while True:
                line = (await asyncio.to_thread(input, "> ")).strip()
                if not line:
                    continue
                if line.startswith("/"):
                    if not await handle_control(line, engine, capture):
                        break
                    continue
                print_result(await engine.submit(line))
        except (EOFError, KeyboardInterrupt):
            pass
        finally:
            await capture.stop()
            speaker.shutdown()
            await browser.close()

    print("\n✓ Agent 已退出")


def main() -> None:
    configure_logging()
    start_url = sys.argv[1] if len(sys.argv) > 1 else DEFAULT_START_URL
    asyncio.run(run_agent(start_url))


if __name__ == "__main__":
    main()
