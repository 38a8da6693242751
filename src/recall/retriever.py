"""
检索器模块

双路检索：实体检索 + 语义向量检索，合并去重后按多信号公式重排序。

重排序公式（结果截断到 [0, 1]）::

    similarity * 0.60
    + exp(-days_since_last_observed / 28) * 0.10
    + confidence_score * 0.15
    + min(times_observed / 10, 1) * 0.10
    + 0.05（correction / decision / commitment）
    + 0.15（查询命中关键词模式且类型在该模式的加权集合中，仅第一个命中的模式生效）
    + (positive_feedback - negative_feedback) * 0.05
"""

import logging
import math
import re
import uuid
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Union

import numpy as np

from .embedding_service import EmbeddingService, EmbeddingServiceError
from .models import (
    EntityRecord,
    EntityResult,
    FeedbackType,
    HybridResult,
    MemoryRecord,
    MemoryType,
    Occurrence,
    RecallLogEntry,
    RetrievalMethod,
    RetrievalResult,
    SemanticResult,
)


logger = logging.getLogger(__name__)


RANKING_WEIGHTS = {
    'vector_similarity': 0.60,
    'recency': 0.10,
    'confidence': 0.15,
    'observation_count': 0.10,
    'type_boost': 0.05,
}

RECENCY_DECAY_DAYS = 28.0
OBSERVATION_CAP = 10
QUERY_TYPE_BOOST = 0.15
FEEDBACK_WEIGHT = 0.05
ENTITY_MATCH_SCORE = 1.0

HIGH_PRIORITY_TYPES = (
    MemoryType.CORRECTION.value,
    MemoryType.DECISION.value,
    MemoryType.COMMITMENT.value,
)

# 有序：只有第一个命中的模式生效
TYPE_BOOST_KEYWORDS: List[Tuple[re.Pattern, Tuple[str, ...]]] = [
    (re.compile(r"mistake|wrong|error", re.IGNORECASE), ("correction", "gap")),
    (re.compile(r"decided|chose|decision", re.IGNORECASE), ("decision",)),
    (re.compile(r"always|usually|prefer", re.IGNORECASE), ("commitment", "pattern_seed")),
    (re.compile(r"learned|realized", re.IGNORECASE), ("learning", "insight")),
]

_CAPITALIZED_RE = re.compile(r"\b[A-Z][a-z]+\b")
_QUOTED_RE = re.compile(r'"([^"]+)"')
_MARKER_RES = [
    re.compile(r'\bproject[\s:]+"?([^"]+)"?', re.IGNORECASE),
    re.compile(r'\bperson[\s:]+"?([^"]+)"?', re.IGNORECASE),
]


class RetrieverError(Exception):
    """检索器异常基类"""
    pass


class InvalidFeedbackError(RetrieverError, ValueError):
    """反馈参数不合法"""
    pass


class MemoryStoreProtocol(Protocol):
    """检索器依赖的记忆存储接口"""

    def get_by_id(self, memory_id: str) -> Optional[MemoryRecord]: ...

    def get_with_embeddings(self) -> List[MemoryRecord]: ...

    def add_positive_feedback(self, memory_id: str) -> bool: ...

    def add_negative_feedback(self, memory_id: str) -> bool: ...


class EntityStoreProtocol(Protocol):
    """检索器依赖的实体存储接口"""

    def get_by_id(self, entity_id: str) -> Optional[EntityRecord]: ...

    def get_by_name(self, name: str) -> List[EntityRecord]: ...

    def get_occurrences(self, entity_id: str) -> List[Occurrence]: ...


def _days_between(earlier: datetime, later: datetime) -> float:
    """两个时间点相差的天数（兼容 naive / aware 混用，未来时间按 0 计）"""
    if (earlier.tzinfo is None) != (later.tzinfo is None):
        earlier = earlier.astimezone()
        later = later.astimezone()
    return max((later - earlier).total_seconds() / 86400.0, 0.0)


def query_type_boost(query: str, memory_type: Optional[str]) -> float:
    """
    查询感知的类型加权

    按表顺序检查关键词模式，第一个在查询中命中且包含该类型的模式给出 0.15。
    """
    if not query or not memory_type:
        return 0.0

    for pattern, types in TYPE_BOOST_KEYWORDS:
        if pattern.search(query) and memory_type in types:
            return QUERY_TYPE_BOOST

    return 0.0


def calculate_final_score(
    memory: MemoryRecord,
    similarity: float,
    query: str,
    now: Optional[datetime] = None
) -> float:
    """
    多信号重排序得分（纯函数）

    Args:
        memory: 记忆
        similarity: 与查询的余弦相似度（实体路径结果传 0）
        query: 原始查询文本
        now: 当前时间（默认 datetime.now()）

    Returns:
        最终得分（0-1）
    """
    now = now or datetime.now()
    score = 0.0

    score += (similarity or 0.0) * RANKING_WEIGHTS['vector_similarity']

    days_since = _days_between(memory.last_observed_at, now)
    score += math.exp(-days_since / RECENCY_DECAY_DAYS) * RANKING_WEIGHTS['recency']

    score += (memory.confidence_score or 0.0) * RANKING_WEIGHTS['confidence']

    observation_score = min((memory.times_observed or 1) / OBSERVATION_CAP, 1.0)
    score += observation_score * RANKING_WEIGHTS['observation_count']

    if memory.type in HIGH_PRIORITY_TYPES:
        score += RANKING_WEIGHTS['type_boost']

    score += query_type_boost(query, memory.type)

    net_feedback = (memory.positive_feedback or 0) - (memory.negative_feedback or 0)
    score += net_feedback * FEEDBACK_WEIGHT

    return min(max(score, 0.0), 1.0)


class Retriever:
    """
    记忆检索器

    提供三种检索方式：
    - retrieve_by_entities: 实体检索（精确匹配，得分恒为 1.0）
    - retrieve_by_semantic: 语义检索（全量暴力扫描已嵌入的记忆）
    - retrieve_dual: 双路检索 + 合并去重 + 重排序
    """

    def __init__(
        self,
        memory_store: MemoryStoreProtocol,
        entity_store: EntityStoreProtocol,
        embedding_service: EmbeddingService,
        default_limit: int = 10,
        semantic_threshold: float = 0.4,
        entity_fetch_multiplier: int = 2,
        clock: Callable[[], datetime] = datetime.now
    ):
        """
        初始化检索器

        Args:
            memory_store: 记忆存储
            entity_store: 实体存储
            embedding_service: 嵌入服务
            default_limit: 默认返回数量
            semantic_threshold: 默认语义相似度阈值
            entity_fetch_multiplier: 双路检索时每条路径多取的倍数
            clock: 当前时间（测试时可注入）
        """
        self.memory_store = memory_store
        self.entity_store = entity_store
        self.embedding_service = embedding_service
        self.default_limit = default_limit
        self.semantic_threshold = semantic_threshold
        self.entity_fetch_multiplier = entity_fetch_multiplier
        self.clock = clock

        logger.info("Retriever initialized")

    def _resolve_entity(self, reference: str) -> Optional[EntityRecord]:
        """先按ID解析，失败再按名称（取第一个）"""
        entity = self.entity_store.get_by_id(reference)
        if entity is not None:
            return entity

        matches = self.entity_store.get_by_name(reference)
        return matches[0] if matches else None

    def retrieve_by_entities(self, entity_refs: Sequence[str], limit: Optional[int] = None) -> List[EntityResult]:
        """
        实体检索

        Args:
            entity_refs: 实体ID或名称列表
            limit: 返回数量

        Returns:
            按置信度降序的实体检索结果
        """
        if limit is None:
            limit = self.default_limit
        if not entity_refs:
            return []

        results: Dict[str, EntityResult] = OrderedDict()

        for reference in entity_refs:
            entity = self._resolve_entity(reference)
            if entity is None:
                logger.debug(f"Entity reference not resolved, skipping: {reference}")
                continue

            for occurrence in self.entity_store.get_occurrences(entity.id):
                if occurrence.memory_id in results:
                    continue
                memory = self.memory_store.get_by_id(occurrence.memory_id)
                if memory is None:
                    logger.debug(f"Occurrence {occurrence.id} references missing memory {occurrence.memory_id}")
                    continue

                results[memory.id] = EntityResult(
                    memory=memory,
                    entity_match_score=ENTITY_MATCH_SCORE,
                    matched_entity=entity.name,
                )

        ranked = sorted(results.values(), key=lambda r: r.memory.confidence_score, reverse=True)
        return ranked[:limit]

    def retrieve_by_semantic(
        self,
        query: str,
        threshold: Optional[float] = None,
        limit: Optional[int] = None
    ) -> List[SemanticResult]:
        """
        语义检索

        对所有已嵌入的记忆计算余弦相似度，O(N) 暴力扫描。

        Args:
            query: 查询文本
            threshold: 相似度阈值（0-1），低于阈值的结果被过滤
            limit: 返回数量

        Returns:
            按相似度降序的语义检索结果

        Raises:
            RetrieverError: 嵌入或存储失败
        """
        if threshold is None:
            threshold = self.semantic_threshold
        if limit is None:
            limit = self.default_limit
        if not query or not isinstance(query, str) or not query.strip():
            return []

        try:
            query_vector = self.embedding_service.embed(query)
        except EmbeddingServiceError as e:
            logger.error(f"Failed to embed query: {e}")
            raise RetrieverError(f"Failed to embed query: {e}")

        dimension = len(query_vector)
        candidates: List[Tuple[MemoryRecord, np.ndarray]] = []
        for memory in self.memory_store.get_with_embeddings():
            try:
                vector = self.embedding_service.deserialize(memory.embedding)
            except EmbeddingServiceError as e:
                logger.warning(f"Skipping memory {memory.id} with unreadable embedding: {e}")
                continue
            if len(vector) != dimension:
                logger.warning(
                    f"Skipping memory {memory.id}: embedding dimension {len(vector)} != {dimension}"
                )
                continue
            candidates.append((memory, vector))

        matches = self.embedding_service.find_similar(
            query_vector,
            candidates,
            threshold=threshold,
            limit=limit,
            key=lambda c: c[1],
        )

        logger.debug(f"Semantic search scanned {len(candidates)} memories, {len(matches)} above {threshold}")
        return [
            SemanticResult(memory=memory, similarity=similarity)
            for (memory, _), similarity in matches
        ]

    def merge_results(
        self,
        entity_results: Sequence[EntityResult],
        semantic_results: Sequence[SemanticResult]
    ) -> List[RetrievalResult]:
        """
        合并两路结果并按记忆ID去重

        两路同时命中的记忆标记为 hybrid，保留实体得分并补上相似度。
        """
        merged: Dict[str, RetrievalResult] = OrderedDict()

        for result in entity_results:
            merged[result.id] = result

        for result in semantic_results:
            existing = merged.get(result.id)
            if isinstance(existing, (EntityResult, HybridResult)):
                merged[result.id] = HybridResult(
                    memory=existing.memory,
                    entity_match_score=existing.entity_match_score,
                    matched_entity=existing.matched_entity,
                    similarity=result.similarity,
                )
            else:
                merged[result.id] = result

        return list(merged.values())

    def calculate_final_score(self, memory: MemoryRecord, similarity: float, query: str) -> float:
        """使用检索器时钟计算重排序得分"""
        return calculate_final_score(memory, similarity, query, now=self.clock())

    def retrieve_dual(
        self,
        query: str,
        entity_refs: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        semantic_threshold: Optional[float] = None,
        auto_extract_entities: bool = False
    ) -> List[RetrievalResult]:
        """
        双路检索

        实体路径与语义路径相互独立；任一路径失败只会让该路径返回空列表。

        Args:
            query: 查询文本
            entity_refs: 实体ID或名称（可选）
            limit: 返回数量
            semantic_threshold: 语义相似度阈值
            auto_extract_entities: 未提供实体时是否从查询中启发式提取

        Returns:
            按 final_score 降序的检索结果
        """
        if limit is None:
            limit = self.default_limit
        if semantic_threshold is None:
            semantic_threshold = self.semantic_threshold

        entity_refs = list(entity_refs or [])
        if not entity_refs and auto_extract_entities:
            entity_refs = self.extract_entities_from_query(query)
            logger.debug(f"Extracted entities from query: {entity_refs}")

        fetch = limit * self.entity_fetch_multiplier

        entity_results: List[EntityResult] = []
        if entity_refs:
            try:
                entity_results = self.retrieve_by_entities(entity_refs, fetch)
            except Exception as e:
                logger.error(f"Entity retrieval failed, continuing with semantic results only: {e}")

        semantic_results: List[SemanticResult] = []
        try:
            semantic_results = self.retrieve_by_semantic(query, semantic_threshold, fetch)
        except Exception as e:
            logger.error(f"Semantic retrieval failed, continuing with entity results only: {e}")

        merged = self.merge_results(entity_results, semantic_results)

        now = self.clock()
        for result in merged:
            result.final_score = calculate_final_score(result.memory, result.similarity_or_zero, query, now=now)

        merged.sort(key=lambda r: r.final_score, reverse=True)

        hybrid = sum(1 for r in merged if r.retrieval_method == RetrievalMethod.HYBRID)
        logger.debug(
            f"Dual retrieval: entity={len(entity_results)}, semantic={len(semantic_results)}, "
            f"merged={len(merged)}, hybrid={hybrid}, returning {min(limit, len(merged))}"
        )
        return merged[:limit]

    def extract_entities_from_query(self, query: str) -> List[str]:
        """
        从查询文本中启发式提取实体名称

        规则：首字母大写的单词、双引号内的内容、project:/person: 之后的文本。
        结果去重并保持出现顺序。
        """
        if not query:
            return []

        entities: List[str] = []
        entities.extend(_CAPITALIZED_RE.findall(query))
        entities.extend(_QUOTED_RE.findall(query))

        for marker in _MARKER_RES:
            match = marker.search(query)
            if match and match.group(1).strip():
                entities.append(match.group(1).strip())

        return list(OrderedDict.fromkeys(entities))

    def submit_feedback(
        self,
        memory_id: str,
        session_id: Optional[str],
        feedback_type: Union[str, FeedbackType],
        query_context: Optional[str] = None
    ) -> bool:
        """
        提交用户反馈

        Args:
            memory_id: 记忆ID
            session_id: 会话ID
            feedback_type: "positive" 或 "negative"
            query_context: 触发反馈的查询（可选）

        Returns:
            计数是否更新成功

        Raises:
            InvalidFeedbackError: 记忆ID为空或反馈类型不合法
        """
        if not memory_id:
            raise InvalidFeedbackError("Memory ID is required")

        try:
            feedback = FeedbackType(feedback_type)
        except ValueError:
            raise InvalidFeedbackError(f'Feedback type must be "positive" or "negative", got {feedback_type!r}')

        try:
            if feedback is FeedbackType.POSITIVE:
                updated = self.memory_store.add_positive_feedback(memory_id)
            else:
                updated = self.memory_store.add_negative_feedback(memory_id)

            record_feedback = getattr(self.memory_store, 'record_feedback', None)
            if updated is not False and callable(record_feedback):
                record_feedback(memory_id, session_id, feedback.value, query_context)

        except Exception as e:
            logger.error(f"Failed to submit feedback for memory {memory_id}: {e}")
            return False

        logger.info(f"Feedback submitted: memory={memory_id}, session={session_id}, type={feedback.value}")
        return bool(updated) if updated is not None else True

    def log_recall(self, session_id: Optional[str], query: str, results: Sequence[RetrievalResult]) -> None:
        """
        记录一次召回（用于分析）

        写入失败只记警告，不影响检索调用。
        """
        top_scores = [round(r.final_score, 4) for r in results[:3] if r.final_score is not None]
        logger.info(
            f"Recall logged: session={session_id}, results={len(results)}, top_scores={top_scores}"
        )

        log_recalls = getattr(self.memory_store, 'log_recalls', None)
        if not callable(log_recalls) or not results:
            return

        recalled_at = self.clock()
        entries = [
            RecallLogEntry(
                id=str(uuid.uuid4()),
                session_id=session_id,
                memory_id=result.id,
                query_text=query,
                similarity_score=getattr(result, 'similarity', None),
                final_rank=rank,
                recalled_at=recalled_at,
            )
            for rank, result in enumerate(results, start=1)
        ]

        try:
            log_recalls(entries)
        except Exception as e:
            logger.warning(f"Failed to persist recall log: {e}")

    def get_statistics(self) -> Dict[str, float]:
        """召回统计（存储不支持时返回零值）"""
        get_recall_statistics = getattr(self.memory_store, 'get_recall_statistics', None)
        if callable(get_recall_statistics):
            try:
                return get_recall_statistics()
            except Exception as e:
                logger.warning(f"Failed to load recall statistics: {e}")

        return {
            'total_recalls': 0,
            'avg_memories_per_query': 0.0,
            'avg_relevance_score': 0.0,
            'feedback_ratio': 0.0,
        }
