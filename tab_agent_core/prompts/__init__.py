"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取 system prompt 文本，
用于构造发给模型的第一条 ChatMessage(role="system")。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent

_PROMPT_FILES = {
    "page-assistant": "page_assistant_system.md",
}


def load_system_prompt(agent_type: str = "page-assistant", locale: str = "en") -> str:
    """根据助手类型和语言加载系统提示词文本。"""

    fname = PROMPTS_DIR / locale / _PROMPT_FILES[agent_type]
    return fname.read_text(encoding="utf-8")
