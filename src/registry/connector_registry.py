"""Connector 注册表：从 connectors 目录的 YAML 加载生成后端配置，并构造 Connector 实例。

YAML 示例：
    name: primary
    type: http
    base_url: http://localhost:8000
    priority: 1
    enabled: true
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, ValidationError

from src.connectors.base import BaseConnector
from src.connectors.http_connector import HttpAIConnector
from src.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


class ConnectorConfig(BaseModel):
    """单个 Connector 的配置。"""

    name: str
    type: str = "http"
    base_url: str = ""
    priority: int = 100
    timeout: float = 30.0
    enabled: bool = True


class ConnectorRegistry:
    """内存中的 Connector 配置表：name -> ConnectorConfig，支持从目录加载与重载。"""

    def __init__(self, config_dir: str = "connectors/"):
        """指定配置目录并立即从该目录加载所有 *.yaml。"""
        self.configs: dict[str, ConnectorConfig] = {}
        self.config_dir = config_dir
        self._load_from_dir(config_dir)

    def _load_from_dir(self, config_dir: str) -> None:
        """遍历目录下所有 .yaml 文件；解析失败的文件记录错误后跳过。"""
        config_path = Path(config_dir)
        if not config_path.exists():
            logger.warning("Connector config dir not found: %s", config_dir)
            return
        for file in sorted(config_path.glob("*.yaml")):
            try:
                config = self._load_config(file)
                self.configs[config.name] = config
                logger.info(
                    "Loaded connector: %s (%s, priority=%s) -> %s",
                    config.name, config.type, config.priority, config.base_url,
                )
            except (OSError, yaml.YAMLError, ValidationError, ConfigurationError) as e:
                logger.error("Failed to load connector from %s: %s", file, e)

    def _load_config(self, file: Path) -> ConnectorConfig:
        with open(file, "r", encoding="utf-8") as f:
            # BaseLoader 不做 YAML 1.1 隐式类型转换（off / yes 等仍是字符串），类型交给 pydantic 解析
            data = yaml.load(f, Loader=yaml.BaseLoader)
        if not isinstance(data, dict):
            raise ConfigurationError(f"{file} does not contain a mapping")
        return ConnectorConfig(**data)

    def register(self, config: ConnectorConfig) -> None:
        """动态注册一个 Connector 配置；同名会覆盖。"""
        self.configs[config.name] = config
        logger.info("Registered connector: %s (priority=%s)", config.name, config.priority)

    def list_configs(self) -> list[ConnectorConfig]:
        return sorted(self.configs.values(), key=lambda c: c.priority)

    def build_connectors(self) -> list[BaseConnector]:
        """为所有启用的配置构造 Connector；未知类型或缺少 base_url 的配置会被跳过。"""
        connectors: list[BaseConnector] = []
        for config in self.list_configs():
            if not config.enabled:
                logger.info("Connector %s disabled, skipping", config.name)
                continue
            try:
                connectors.append(self._create_connector(config))
            except ConfigurationError as e:
                logger.error("Cannot build connector %s: %s", config.name, e)
        return connectors

    def _create_connector(self, config: ConnectorConfig) -> BaseConnector:
        if config.type == "http":
            if not config.base_url:
                raise ConfigurationError("http connector requires base_url")
            return HttpAIConnector(
                base_url=config.base_url,
                name=config.name,
                priority=config.priority,
                timeout=config.timeout,
            )
        raise ConfigurationError(f"Unknown connector type: {config.type}")

    def reload(self) -> None:
        """清空当前表并从 config_dir 重新加载所有 YAML。"""
        self.configs.clear()
        self._load_from_dir(self.config_dir)
