"""生成后端 Connector：BaseConnector 抽象基类、HttpAIConnector 实现与 ConnectorChain。"""
from src.connectors.base import BaseConnector
from src.connectors.chain import ConnectorChain
from src.connectors.http_connector import HttpAIConnector

__all__ = [
    "BaseConnector",
    "ConnectorChain",
    "HttpAIConnector",
]
