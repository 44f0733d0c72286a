"""配置模块：环境变量、日志与持久化设置"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

# 加载 .env 文件中的环境变量
load_dotenv()

BASE_URL = os.environ.get("VOICE_AGENT_BASE_URL", "https://api.groq.com/openai/v1")
MODEL_NAME = os.environ.get("VOICE_AGENT_MODEL", "llama-3.1-8b-instant")
STT_MODEL_NAME = os.environ.get("VOICE_AGENT_STT_MODEL", "whisper-large-v3-turbo")
STT_LANGUAGE = os.environ.get("VOICE_AGENT_STT_LANGUAGE", "en").strip() or "en"
LLM_TIMEOUT_SECONDS = float(os.environ.get("VOICE_AGENT_LLM_TIMEOUT", "10"))
SETTINGS_PATH = os.environ.get(
    "VOICE_AGENT_SETTINGS_PATH",
    os.path.join(os.path.expanduser("~"), ".voice_agent", "settings.json"),
)
LOG_LEVEL = os.environ.get("VOICE_AGENT_LOG_LEVEL", "INFO").upper()

API_KEY_ENV = "GROQ_API_KEY"
API_KEY_SETTING = "groq_api_key"
API_KEY_PREFIX = "gsk_"


def configure_logging(level: str = LOG_LEVEL) -> None:
    """给宿主程序用，库代码本身不安装 handler"""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)-5s] %(name)s: %(message)s", "%H:%M:%S"))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level, logging.INFO))


class SettingsStore:
    """简单的 JSON 文件键值存储"""

    def __init__(self, path: str = SETTINGS_PATH):
        self.path = Path(path)

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logging.getLogger(__name__).warning(f"⚠ 设置文件读取失败 {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)


def is_valid_api_key(key: Optional[str]) -> bool:
    return bool(key) and key.strip().startswith(API_KEY_PREFIX)


class Settings:
    """
    远程服务凭据的来源：
      1. 设置文件中操作员填写的 key（优先）
      2. 环境变量 GROQ_API_KEY
    两者都无效时返回 None，远程解释器随之停用。
    """

    def __init__(self, store: Optional[SettingsStore] = None):
        self.store = store or SettingsStore()

    def api_key(self) -> Optional[str]:
        stored = self.store.get(API_KEY_SETTING)
        if is_valid_api_key(stored):
            return stored.strip()
        env_key = os.environ.get(API_KEY_ENV)
        if is_valid_api_key(env_key):
            return env_key.strip()
        return None

    def has_api_key(self) -> bool:
        return self.api_key() is not None

    def set_api_key(self, key: str) -> bool:
        if not is_valid_api_key(key):
            return False
        self.store.set(API_KEY_SETTING, key.strip())
        return True
