"""Tab Agent Core 顶层包。

该包提供浏览器侧边栏助手的协调器核心实现：
按标签页隔离的对话状态、消息路由、工具调用循环与超长结果分页，
以及配置加载、Provider 适配与持久化存储等能力。
"""

from tab_agent_core.api.service import BackgroundService

__all__ = ["BackgroundService"]
