"""领域层模型与协议。

包含：
- models: Conversation / Message / QueuedMessageItem 以及后端请求模型。
- stores: ConversationStore 与 MessageQueueStore 抽象。
- exceptions: 业务异常类型定义。
"""
