"""
记忆管理器模块

统一的记忆操作入口：加载配置，组装记忆存储、实体存储、嵌入服务和检索器，
并提供新增记忆、补全嵌入、关联实体、检索、反馈等高层接口。
"""

import copy
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import yaml

from .embedding_service import EmbeddingService, EmbeddingServiceError
from .entity_store import EntityStore, EntityStoreError
from .memory_store import MemoryStore, MemoryStoreError
from .models import MemoryRecord, RetrievalResult
from .retriever import InvalidFeedbackError, Retriever


logger = logging.getLogger(__name__)


DEFAULT_CONFIG: Dict[str, Any] = {
    'storage': {
        'memories_db': 'data/memory/memories.db',
        'entities_db': 'data/memory/entities.db',
    },
    'embedding': {
        'base_url': 'http://localhost:11434',
        'model': 'mxbai-embed-large',
        'dimension': 1024,
        'timeout': 30.0,
        'health_timeout': 5.0,
        'health_check_interval': 300.0,
        'batch_size': 100,
    },
    'retrieval': {
        'default_limit': 10,
        'semantic_threshold': 0.4,
        'entity_fetch_multiplier': 2,
        'auto_extract_entities': True,
    },
}


class MemoryManagerError(Exception):
    """记忆管理器异常基类"""
    pass


def _merge_config(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """按节合并配置，未提供的键使用默认值"""
    merged = copy.deepcopy(defaults)
    for section, values in (overrides or {}).items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


class MemoryManager:
    """
    记忆管理器

    协调各子组件：
    - MemoryStore: 记忆 / 召回日志 / 反馈
    - EntityStore: 实体与出现记录
    - EmbeddingService: 文本嵌入（Ollama，失败降级为合成向量）
    - Retriever: 双路检索与重排序
    """

    def __init__(
        self,
        config_path: str = "config/memory_config.yaml",
        config: Optional[Dict[str, Any]] = None,
        embedding_service: Optional[EmbeddingService] = None
    ):
        """
        初始化记忆管理器

        Args:
            config_path: 配置文件路径
            config: 直接传入的配置（优先于配置文件）
            embedding_service: 预先构造的嵌入服务（可选）
        """
        self.config_path = config_path
        self.config = _merge_config(DEFAULT_CONFIG, config) if config is not None else self._load_config()

        self._initialize_components(embedding_service)

        logger.info("MemoryManager initialized successfully")

    def _load_config(self) -> Dict[str, Any]:
        """加载配置文件"""
        config_file = Path(self.config_path)
        if not config_file.exists():
            logger.warning(f"Config file not found: {self.config_path}, using defaults")
            return copy.deepcopy(DEFAULT_CONFIG)

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f) or {}

            logger.info(f"Config loaded from: {self.config_path}")
            return _merge_config(DEFAULT_CONFIG, loaded)

        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load config: {e}, using defaults")
            return copy.deepcopy(DEFAULT_CONFIG)

    def _initialize_components(self, embedding_service: Optional[EmbeddingService]):
        """初始化各子组件"""
        storage = self.config['storage']
        embedding = self.config['embedding']
        retrieval = self.config['retrieval']

        try:
            self.memory_store = MemoryStore(db_path=storage['memories_db'])
            self.entity_store = EntityStore(db_path=storage['entities_db'])

            self.embedding_service = embedding_service or EmbeddingService(
                base_url=embedding['base_url'],
                model=embedding['model'],
                dimension=embedding['dimension'],
                timeout=embedding['timeout'],
                health_timeout=embedding['health_timeout'],
                health_check_interval=embedding['health_check_interval'],
                batch_size=embedding['batch_size'],
            )

            self.retriever = Retriever(
                memory_store=self.memory_store,
                entity_store=self.entity_store,
                embedding_service=self.embedding_service,
                default_limit=retrieval['default_limit'],
                semantic_threshold=retrieval['semantic_threshold'],
                entity_fetch_multiplier=retrieval['entity_fetch_multiplier'],
            )

            logger.info("All components initialized")

        except (MemoryStoreError, EntityStoreError, EmbeddingServiceError, OSError, KeyError) as e:
            logger.error(f"Failed to initialize components: {e}")
            raise MemoryManagerError(f"Initialization failed: {e}")

    def add_memory(
        self,
        memory_type: str,
        title: str,
        content: str,
        category: Optional[str] = None,
        confidence_score: float = 0.5,
        times_observed: int = 1,
        source_chunk: Optional[str] = None,
        observed_at: Optional[datetime] = None,
        embed: bool = True
    ) -> str:
        """
        添加新记忆

        Args:
            memory_type: 记忆类型
            title: 标题
            content: 正文
            category: 分类
            confidence_score: 置信度（0-1）
            times_observed: 观察次数
            source_chunk: 来源片段
            observed_at: 观察时间（默认当前时间）
            embed: 是否立即生成嵌入（否则留给 embed_pending）

        Returns:
            记忆ID

        Raises:
            MemoryManagerError: 参数不合法或写入失败
        """
        observed_at = observed_at or datetime.now()

        try:
            memory = MemoryRecord(
                id=str(uuid.uuid4()),
                type=memory_type,
                category=category,
                title=title,
                content=content,
                source_chunk=source_chunk,
                confidence_score=confidence_score,
                times_observed=times_observed,
                first_observed_at=observed_at,
                last_observed_at=observed_at,
            )
            if embed:
                vector = self.embedding_service.embed(content)
                memory.embedding = self.embedding_service.serialize(vector)

            self.memory_store.create_memory(memory)

        except (ValueError, EmbeddingServiceError, MemoryStoreError) as e:
            logger.error(f"Failed to add memory: {e}")
            raise MemoryManagerError(f"Failed to add memory: {e}")

        logger.info(f"Memory added: {memory.id} (type={memory.type}, embedded={embed})")
        return memory.id

    def embed_pending(self, on_progress: Optional[Callable[[int, int], None]] = None) -> int:
        """
        为尚未嵌入的记忆批量生成向量

        Returns:
            本次嵌入的记忆数量
        """
        pending = self.memory_store.get_without_embeddings()
        if not pending:
            return 0

        vectors = self.embedding_service.embed_batch([m.content for m in pending], on_progress=on_progress)

        updated = 0
        for memory, vector in zip(pending, vectors):
            if self.memory_store.update_embedding(memory.id, self.embedding_service.serialize(vector)):
                updated += 1

        logger.info(f"Embedded {updated} pending memories")
        return updated

    def link_entity(
        self,
        name: str,
        memory_id: str,
        entity_type: str = "project",
        context: Optional[str] = None
    ) -> str:
        """
        将实体关联到记忆（实体不存在时自动创建）

        Returns:
            实体ID
        """
        try:
            entity = self.entity_store.find_or_create(name, entity_type)
            self.entity_store.add_occurrence(entity.id, memory_id, context)
        except EntityStoreError as e:
            logger.error(f"Failed to link entity {name} to memory {memory_id}: {e}")
            raise MemoryManagerError(f"Failed to link entity: {e}")

        return entity.id

    def retrieve(
        self,
        query: str,
        entity_refs: Optional[Sequence[str]] = None,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
        semantic_threshold: Optional[float] = None
    ) -> List[RetrievalResult]:
        """
        检索相关记忆并记录召回日志

        Args:
            query: 查询文本
            entity_refs: 实体ID或名称（为空时按配置自动从查询中提取）
            session_id: 会话ID（用于召回日志）
            limit: 返回数量
            semantic_threshold: 语义相似度阈值

        Returns:
            按 final_score 降序的检索结果
        """
        results = self.retriever.retrieve_dual(
            query,
            entity_refs=entity_refs,
            limit=limit,
            semantic_threshold=semantic_threshold,
            auto_extract_entities=self.config['retrieval']['auto_extract_entities'],
        )

        self.retriever.log_recall(session_id, query, results)

        logger.debug(f"Retrieved {len(results)} memories for query: {(query or '')[:50]}")
        return results

    def submit_feedback(self, memory_id: str, session_id: Optional[str], feedback_type: str) -> bool:
        """
        提交反馈

        Raises:
            InvalidFeedbackError: 反馈类型不合法
        """
        return self.retriever.submit_feedback(memory_id, session_id, feedback_type)

    def get_statistics(self) -> Dict[str, Any]:
        """
        获取统计信息

        Returns:
            统计信息字典
        """
        try:
            stats = {
                'total_memories': self.memory_store.count(),
                'total_entities': self.entity_store.count(),
                'pending_embeddings': len(self.memory_store.get_without_embeddings()),
                'embedding': self.embedding_service.get_config(),
            }
            stats.update(self.retriever.get_statistics())
            return stats
        except Exception as e:
            logger.error(f"Failed to get statistics: {e}")
            return {}


__all__ = ["MemoryManager", "MemoryManagerError", "InvalidFeedbackError", "DEFAULT_CONFIG"]
