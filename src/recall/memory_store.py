"""
记忆存储模块

使用 SQLite 数据库存储记忆、召回日志和用户反馈。
检索引擎只通过 get_by_id / get_with_embeddings / add_*_feedback 读写此存储。
"""

import sqlite3
import logging
import uuid
from typing import List, Optional, Dict, Any, Iterable
from datetime import datetime
from pathlib import Path
from contextlib import contextmanager

from .models import MemoryRecord, RecallLogEntry, FeedbackType


logger = logging.getLogger(__name__)


class MemoryStoreError(Exception):
    """记忆存储异常基类"""
    pass


class MemoryStore:
    """
    记忆存储管理器

    表结构：
    - memories: 记忆本体（含嵌入 BLOB、置信度、观察次数、反馈计数）
    - session_recalls: 每次检索返回的记忆（用于分析）
    - memory_feedback: 用户对召回结果的显式反馈
    """

    CREATE_TABLES_SQL = [
        """
        CREATE TABLE IF NOT EXISTS memories (
            id TEXT PRIMARY KEY,
            type TEXT CHECK(type IN (
                'correction', 'decision', 'commitment', 'insight',
                'learning', 'confidence', 'pattern_seed', 'cross_agent',
                'workflow_note', 'gap'
            )) NOT NULL,
            category TEXT,
            title TEXT NOT NULL,
            content TEXT NOT NULL,
            source_chunk TEXT,
            embedding BLOB,
            confidence_score REAL CHECK(confidence_score >= 0 AND confidence_score <= 1),
            times_observed INTEGER DEFAULT 1,
            recall_count INTEGER DEFAULT 0,
            positive_feedback INTEGER DEFAULT 0,
            negative_feedback INTEGER DEFAULT 0,
            first_observed_at DATETIME NOT NULL,
            last_observed_at DATETIME NOT NULL
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS session_recalls (
            id TEXT PRIMARY KEY,
            session_id TEXT,
            memory_id TEXT REFERENCES memories(id),
            query_text TEXT,
            similarity_score REAL,
            final_rank INTEGER,
            was_useful INTEGER,
            recalled_at DATETIME NOT NULL
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS memory_feedback (
            id TEXT PRIMARY KEY,
            memory_id TEXT REFERENCES memories(id),
            session_id TEXT,
            query_context TEXT,
            feedback_type TEXT CHECK(feedback_type IN ('positive', 'negative')),
            created_at DATETIME NOT NULL
        );
        """,
    ]

    CREATE_INDEXES_SQL = [
        "CREATE INDEX IF NOT EXISTS idx_memories_type ON memories(type);",
        "CREATE INDEX IF NOT EXISTS idx_memories_last_observed ON memories(last_observed_at);",
        "CREATE INDEX IF NOT EXISTS idx_recalls_session ON session_recalls(session_id);",
        "CREATE INDEX IF NOT EXISTS idx_feedback_memory ON memory_feedback(memory_id);",
    ]

    MEMORY_COLUMNS = (
        "id", "type", "category", "title", "content", "source_chunk", "embedding",
        "confidence_score", "times_observed", "recall_count", "positive_feedback",
        "negative_feedback", "first_observed_at", "last_observed_at",
    )

    def __init__(self, db_path: str = "data/memory/memories.db"):
        """
        初始化记忆存储

        Args:
            db_path: 数据库文件路径
        """
        self.db_path = Path(db_path)

        # 确保目录存在
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._initialize_database()

        logger.info(f"MemoryStore initialized: db={db_path}")

    def _initialize_database(self):
        """初始化数据库表和索引"""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            for table_sql in self.CREATE_TABLES_SQL:
                cursor.execute(table_sql)

            for index_sql in self.CREATE_INDEXES_SQL:
                cursor.execute(index_sql)

            conn.commit()
            logger.debug("Memory database initialized")

    @contextmanager
    def _get_connection(self):
        """获取数据库连接（上下文管理器）"""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _row_to_memory(self, row: sqlite3.Row) -> MemoryRecord:
        """将数据库行转换为 MemoryRecord"""
        data = dict(row)
        if data.get('confidence_score') is None:
            data.pop('confidence_score')
        return MemoryRecord.from_dict(data)

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """执行写操作，返回受影响行数"""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(sql, tuple(params))
            conn.commit()
            return cursor.rowcount

    def create_memory(self, memory: MemoryRecord) -> str:
        """
        添加新记忆

        Args:
            memory: 记忆对象

        Returns:
            记忆ID

        Raises:
            MemoryStoreError: 添加失败（如 ID 重复）
        """
        placeholders = ", ".join("?" for _ in self.MEMORY_COLUMNS)
        sql = f"INSERT INTO memories ({', '.join(self.MEMORY_COLUMNS)}) VALUES ({placeholders})"

        try:
            self._execute(sql, (
                memory.id,
                memory.type,
                memory.category,
                memory.title,
                memory.content,
                memory.source_chunk,
                memory.embedding,
                memory.confidence_score,
                memory.times_observed,
                memory.recall_count,
                memory.positive_feedback,
                memory.negative_feedback,
                memory.first_observed_at.isoformat(),
                memory.last_observed_at.isoformat(),
            ))

            logger.debug(f"Memory added: {memory.id} (type={memory.type})")
            return memory.id

        except sqlite3.IntegrityError as e:
            logger.error(f"Failed to add memory (integrity error): {e}")
            raise MemoryStoreError(f"Memory ID already exists or violates constraints: {memory.id}")
        except sqlite3.Error as e:
            logger.error(f"Failed to add memory: {e}")
            raise MemoryStoreError(f"Failed to add memory: {e}")

    def get_by_id(self, memory_id: str) -> Optional[MemoryRecord]:
        """
        获取单条记忆

        Args:
            memory_id: 记忆ID

        Returns:
            记忆对象，不存在返回 None
        """
        sql = "SELECT * FROM memories WHERE id = ?"

        with self._get_connection() as conn:
            row = conn.execute(sql, (memory_id,)).fetchone()

        return self._row_to_memory(row) if row is not None else None

    def get_with_embeddings(self) -> List[MemoryRecord]:
        """获取所有已有嵌入向量的记忆（按观察时间倒序）"""
        sql = "SELECT * FROM memories WHERE embedding IS NOT NULL ORDER BY first_observed_at DESC"

        with self._get_connection() as conn:
            rows = conn.execute(sql).fetchall()

        return [self._row_to_memory(row) for row in rows]

    def get_without_embeddings(self, limit: Optional[int] = None) -> List[MemoryRecord]:
        """获取尚未嵌入的记忆"""
        sql = "SELECT * FROM memories WHERE embedding IS NULL ORDER BY first_observed_at DESC"
        params: List[Any] = []
        if limit:
            sql += " LIMIT ?"
            params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()

        return [self._row_to_memory(row) for row in rows]

    def update_embedding(self, memory_id: str, embedding: bytes) -> bool:
        """
        更新记忆的嵌入向量

        Args:
            memory_id: 记忆ID
            embedding: 序列化后的向量

        Returns:
            是否更新到记录
        """
        updated = self._execute("UPDATE memories SET embedding = ? WHERE id = ?", (embedding, memory_id))
        logger.debug(f"Embedding updated for memory {memory_id}: {bool(updated)}")
        return updated > 0

    def add_positive_feedback(self, memory_id: str) -> bool:
        """正反馈计数 +1"""
        return self._execute(
            "UPDATE memories SET positive_feedback = positive_feedback + 1 WHERE id = ?",
            (memory_id,)
        ) > 0

    def add_negative_feedback(self, memory_id: str) -> bool:
        """负反馈计数 +1"""
        return self._execute(
            "UPDATE memories SET negative_feedback = negative_feedback + 1 WHERE id = ?",
            (memory_id,)
        ) > 0

    def increment_times_observed(self, memory_id: str, observed_at: Optional[datetime] = None) -> bool:
        """同一事实再次出现：观察次数 +1 并刷新最近观察时间"""
        observed_at = observed_at or datetime.now()
        return self._execute(
            "UPDATE memories SET times_observed = times_observed + 1, last_observed_at = ? WHERE id = ?",
            (observed_at.isoformat(), memory_id)
        ) > 0

    def increment_recall_count(self, memory_id: str) -> bool:
        """召回次数 +1"""
        return self._execute(
            "UPDATE memories SET recall_count = recall_count + 1 WHERE id = ?",
            (memory_id,)
        ) > 0

    def record_feedback(
        self,
        memory_id: str,
        session_id: Optional[str],
        feedback_type: str,
        query_context: Optional[str] = None
    ) -> str:
        """
        记录一条反馈明细

        Args:
            memory_id: 记忆ID
            session_id: 会话ID
            feedback_type: positive / negative
            query_context: 触发反馈的查询

        Returns:
            反馈记录ID
        """
        feedback_id = str(uuid.uuid4())
        sql = """
        INSERT INTO memory_feedback (id, memory_id, session_id, query_context, feedback_type, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """

        try:
            self._execute(sql, (
                feedback_id,
                memory_id,
                session_id,
                query_context,
                FeedbackType(feedback_type).value,
                datetime.now().isoformat(),
            ))
        except sqlite3.Error as e:
            logger.error(f"Failed to record feedback: {e}")
            raise MemoryStoreError(f"Failed to record feedback: {e}")

        return feedback_id

    def log_recalls(self, entries: List[RecallLogEntry]) -> int:
        """
        批量写入召回日志

        Args:
            entries: 召回日志列表

        Returns:
            写入数量
        """
        if not entries:
            return 0

        sql = """
        INSERT INTO session_recalls
        (id, session_id, memory_id, query_text, similarity_score, final_rank, recalled_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """

        try:
            with self._get_connection() as conn:
                conn.executemany(sql, [
                    (
                        entry.id,
                        entry.session_id,
                        entry.memory_id,
                        entry.query_text,
                        entry.similarity_score,
                        entry.final_rank,
                        entry.recalled_at.isoformat(),
                    )
                    for entry in entries
                ])
                conn.execute(
                    f"UPDATE memories SET recall_count = recall_count + 1 "
                    f"WHERE id IN ({', '.join('?' for _ in entries)})",
                    [entry.memory_id for entry in entries]
                )
                conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to log recalls: {e}")
            raise MemoryStoreError(f"Failed to log recalls: {e}")

        return len(entries)

    def get_recall_statistics(self) -> Dict[str, Any]:
        """
        召回与反馈统计

        Returns:
            total_recalls: 查询次数（按 session_id + query_text + 召回时间去重）
            avg_memories_per_query: 每次查询平均返回条数
            avg_relevance_score: 平均相似度（仅语义命中）
            feedback_ratio: 正反馈占全部反馈的比例
        """
        with self._get_connection() as conn:
            queries, rows, avg_similarity = conn.execute(
                """
                SELECT COUNT(DISTINCT COALESCE(session_id, '') || '|' || query_text || '|' || recalled_at),
                       COUNT(*),
                       AVG(similarity_score)
                FROM session_recalls
                """
            ).fetchone()
            positive, total_feedback = conn.execute(
                """
                SELECT SUM(CASE WHEN feedback_type = 'positive' THEN 1 ELSE 0 END), COUNT(*)
                FROM memory_feedback
                """
            ).fetchone()

        return {
            'total_recalls': queries or 0,
            'avg_memories_per_query': (rows / queries) if queries else 0.0,
            'avg_relevance_score': avg_similarity or 0.0,
            'feedback_ratio': ((positive or 0) / total_feedback) if total_feedback else 0.0,
        }

    def count(self) -> int:
        """统计记忆总数"""
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
