"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取默认的 system prompt 文本；
调用方在自己的设置里没有填写提示词时使用它。
"""

from functools import lru_cache
from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


@lru_cache(maxsize=None)
def load_system_prompt(name: str = "sql_assistant", locale: str = "en") -> str:
    """根据提示词名称和语言加载系统提示词文本。"""

    fname = PROMPTS_DIR / locale / f"{name}_system.md"
    return fname.read_text(encoding="utf-8").strip()
