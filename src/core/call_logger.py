"""调用日志：按群组记录每次生成尝试（使用的 Connector、模型、耗时、是否兜底）。

每个群组的日志存在 data/logs/group_{group_id}.jsonl 文件中，
每行一条 JSON 记录（JSONL 格式），便于追加和逐行读取。
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class CallLog(BaseModel):
    """单次生成尝试的完整记录。"""
    group_id: str = ""
    turn_number: int = 0
    persona_id: str = ""
    persona_name: str = ""
    connector: str = ""          # 为空表示没有健康的 Connector
    model_used: str = ""
    content_preview: str = ""
    duration_ms: int = 0
    confidence: float = 0.0
    is_fallback: bool = False
    error: str = ""
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


class CallLogger:
    """按群组写入/读取调用日志（JSONL 格式）。"""

    def __init__(self, log_dir: str = "data/logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def _group_file(self, group_id: str) -> Path:
        return self.log_dir / f"group_{group_id}.jsonl"

    def save(self, log: CallLog) -> None:
        """追加一条日志到该群组文件；写入失败只记日志，不影响回合。"""
        path = self._group_file(log.group_id)
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write(log.model_dump_json() + "\n")
        except OSError as e:
            logger.warning("CallLogger: failed to write %s: %s", path, e)
            return
        logger.debug(
            "CallLogger: saved log for group=%s turn=%s connector=%s fallback=%s",
            log.group_id, log.turn_number, log.connector, log.is_fallback,
        )

    def get_group_logs(self, group_id: str) -> list[CallLog]:
        """读取该群组全部日志，按时间倒序返回；损坏的行跳过。"""
        path = self._group_file(group_id)
        if not path.exists():
            return []
        logs: list[CallLog] = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    logs.append(CallLog.model_validate_json(line))
                except ValidationError:
                    logger.warning("CallLogger: skipping malformed line in %s", path)
        return list(reversed(logs))  # 最新的在最前
