"""
记忆召回模块

为助手上下文构建提供记忆检索能力：实体检索 + 语义向量检索，
合并去重后按多信号公式（相似度、时效、置信度、观察次数、类型、反馈）重排序。

主要组件:
- MemoryManager: 记忆管理器（核心协调者）
- MemoryStore: 记忆存储（SQLite）
- EntityStore: 实体存储（SQLite）
- EmbeddingService: 文本嵌入服务（Ollama + 合成向量降级）
- Retriever: 双路检索器
"""

__version__ = "0.1.0"

# 导出主要接口
from .embedding_service import EmbeddingService, EmbeddingServiceError
from .entity_store import EntityStore, EntityStoreError
from .memory_manager import MemoryManager, MemoryManagerError
from .memory_store import MemoryStore, MemoryStoreError
from .models import (
    EntityRecord,
    EntityResult,
    FeedbackType,
    HybridResult,
    MemoryRecord,
    MemoryType,
    Occurrence,
    RetrievalMethod,
    RetrievalResult,
    SemanticResult,
)
from .retriever import InvalidFeedbackError, Retriever, RetrieverError, calculate_final_score

__all__ = [
    "MemoryManager",
    "MemoryManagerError",
    "MemoryStore",
    "MemoryStoreError",
    "EntityStore",
    "EntityStoreError",
    "EmbeddingService",
    "EmbeddingServiceError",
    "Retriever",
    "RetrieverError",
    "InvalidFeedbackError",
    "calculate_final_score",
    "MemoryRecord",
    "MemoryType",
    "EntityRecord",
    "Occurrence",
    "FeedbackType",
    "RetrievalMethod",
    "RetrievalResult",
    "EntityResult",
    "SemanticResult",
    "HybridResult",
]
