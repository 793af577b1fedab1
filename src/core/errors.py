"""对话引擎的异常分类。

InputError 同步返回给调用方；ConnectorError 只在 Connector 链内部出现并被吸收；
PersistenceError 只终止对应群组的对话循环。
"""

from __future__ import annotations


class ConversationError(Exception):
    """所有引擎异常的基类。"""


class InputError(ConversationError):
    """调用方传入的群组无法开始对话，不会创建任何状态。"""


class EmptyGroupError(InputError):
    def __init__(self, group_id: str):
        super().__init__(f"Group has no personas: {group_id}")
        self.group_id = group_id


class AlreadyActiveError(InputError):
    def __init__(self, group_id: str):
        super().__init__(f"Conversation already active: {group_id}")
        self.group_id = group_id


class PersistenceError(ConversationError):
    """消息写入失败；对该群组是致命的。"""


class ConnectorError(ConversationError):
    """生成后端的健康检查或生成调用失败、返回非 200 或报文无法解析。"""


class ConfigurationError(ConversationError):
    """Connector 配置不可用。"""


class NotFoundError(KeyError):
    """实体（群组 / 人设）不存在。"""


class DuplicateNameError(ValueError):
    """实体名称重复。"""
