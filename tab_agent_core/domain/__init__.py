"""领域层模型与协议。

包含：
- models: 与 LLM Client 交互的 ChatMessage / ChatRequest / ChatResult 模型。
- conversation: 按标签页持久化的 ConversationTurn 及 ConversationStore 协议。
- extension_settings: 单例 settings 文档模型。
- envelope: 跨上下文的 {type, payload} 消息信封。
- exceptions: 业务异常类型定义。
"""
