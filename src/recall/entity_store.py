"""
实体存储模块

使用 SQLite 存储实体（人、项目、组织、地点……）及其在记忆中的出现记录。
"""

import json
import logging
import re
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .models import EntityRecord, Occurrence


logger = logging.getLogger(__name__)


class EntityStoreError(Exception):
    """实体存储异常基类"""
    pass


def generate_slug(name: str) -> str:
    """由名称生成 URL 安全的 slug"""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:100]


class EntityStore:
    """
    实体存储管理器

    名称查找规则：先匹配规范名称（忽略大小写），再匹配别名；
    同名实体按创建顺序返回，调用方取第一个。
    """

    CREATE_TABLES_SQL = [
        """
        CREATE TABLE IF NOT EXISTS entities (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL,
            canonical_name TEXT NOT NULL,
            slug TEXT UNIQUE NOT NULL,
            aliases TEXT,
            context TEXT,
            created_at DATETIME NOT NULL
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS entity_occurrences (
            id TEXT PRIMARY KEY,
            entity_id TEXT NOT NULL REFERENCES entities(id),
            memory_id TEXT NOT NULL,
            context TEXT,
            created_at DATETIME NOT NULL
        );
        """,
    ]

    CREATE_INDEXES_SQL = [
        "CREATE INDEX IF NOT EXISTS idx_entities_name ON entities(canonical_name COLLATE NOCASE);",
        "CREATE INDEX IF NOT EXISTS idx_occurrences_entity ON entity_occurrences(entity_id);",
        "CREATE INDEX IF NOT EXISTS idx_occurrences_memory ON entity_occurrences(memory_id);",
    ]

    def __init__(self, db_path: str = "data/memory/entities.db"):
        """
        初始化实体存储

        Args:
            db_path: 数据库文件路径
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._get_connection() as conn:
            for sql in self.CREATE_TABLES_SQL + self.CREATE_INDEXES_SQL:
                conn.execute(sql)
            conn.commit()

        logger.info(f"EntityStore initialized: db={db_path}")

    @contextmanager
    def _get_connection(self):
        """获取数据库连接（上下文管理器）"""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @staticmethod
    def _row_to_entity(row: sqlite3.Row) -> EntityRecord:
        data = dict(row)
        aliases = []
        if data.get('aliases'):
            try:
                aliases = json.loads(data['aliases'])
            except json.JSONDecodeError:
                logger.warning(f"Malformed aliases for entity {data['id']}")
        return EntityRecord(
            id=data['id'],
            name=data['canonical_name'],
            type=data['type'],
            slug=data['slug'],
            aliases=aliases,
            context=data.get('context'),
            created_at=datetime.fromisoformat(data['created_at']),
        )

    def create_entity(
        self,
        name: str,
        entity_type: str,
        aliases: Optional[List[str]] = None,
        context: Optional[str] = None
    ) -> EntityRecord:
        """
        创建实体

        Args:
            name: 规范名称
            entity_type: 实体类型
            aliases: 别名列表
            context: 描述

        Returns:
            新建的实体

        Raises:
            EntityStoreError: 参数缺失或 slug 冲突
        """
        if not name or not entity_type:
            raise EntityStoreError("Entity must have name and type")

        slug = generate_slug(name)
        if not slug:
            slug = uuid.uuid4().hex[:12]

        entity = EntityRecord(
            id=str(uuid.uuid4()),
            name=name,
            type=entity_type,
            slug=slug,
            aliases=aliases or [],
            context=context,
        )

        sql = """
        INSERT INTO entities (id, type, canonical_name, slug, aliases, context, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """

        try:
            with self._get_connection() as conn:
                conn.execute(sql, (
                    entity.id,
                    entity.type,
                    entity.name,
                    entity.slug,
                    json.dumps(entity.aliases, ensure_ascii=False) if entity.aliases else None,
                    entity.context,
                    entity.created_at.isoformat(),
                ))
                conn.commit()
        except sqlite3.IntegrityError:
            logger.error(f"Entity slug collision: {slug}")
            raise EntityStoreError(f'Entity with slug "{slug}" already exists')

        logger.debug(f"Entity created: {entity.id} (name={name}, type={entity_type})")
        return entity

    def get_by_id(self, entity_id: str) -> Optional[EntityRecord]:
        """按ID获取实体，不存在返回 None"""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
        return self._row_to_entity(row) if row is not None else None

    def get_by_name(self, name: str) -> List[EntityRecord]:
        """
        按名称查找实体

        先做规范名称的忽略大小写精确匹配，无结果时再查别名。

        Args:
            name: 名称

        Returns:
            实体列表（按创建时间升序）
        """
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM entities WHERE canonical_name = ? COLLATE NOCASE ORDER BY created_at, rowid",
                (name,)
            ).fetchall()

            if not rows:
                # 别名以 JSON 数组保存，先用 LIKE 粗筛再精确比较
                candidates = conn.execute(
                    "SELECT * FROM entities WHERE aliases LIKE ? ORDER BY created_at, rowid",
                    (f'%{name}%',)
                ).fetchall()
                rows = [row for row in candidates if self._alias_matches(row, name)]

        return [self._row_to_entity(row) for row in rows]

    def _alias_matches(self, row: sqlite3.Row, name: str) -> bool:
        entity = self._row_to_entity(row)
        return any(alias.lower() == name.lower() for alias in entity.aliases)

    def find_or_create(self, name: str, entity_type: str, context: Optional[str] = None) -> EntityRecord:
        """按名称查找实体，不存在则创建"""
        existing = self.get_by_name(name)
        if existing:
            return existing[0]
        return self.create_entity(name, entity_type, context=context)

    def add_occurrence(self, entity_id: str, memory_id: str, context: Optional[str] = None) -> Occurrence:
        """
        记录实体在记忆中的一次出现

        Raises:
            EntityStoreError: 实体不存在
        """
        if self.get_by_id(entity_id) is None:
            raise EntityStoreError(f"Entity not found: {entity_id}")

        occurrence = Occurrence(
            id=str(uuid.uuid4()),
            entity_id=entity_id,
            memory_id=memory_id,
            context=context,
        )

        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO entity_occurrences (id, entity_id, memory_id, context, created_at) VALUES (?, ?, ?, ?, ?)",
                (occurrence.id, entity_id, memory_id, context, occurrence.created_at.isoformat())
            )
            conn.commit()

        logger.debug(f"Occurrence added: entity={entity_id}, memory={memory_id}")
        return occurrence

    def get_occurrences(self, entity_id: str) -> List[Occurrence]:
        """获取实体的全部出现记录（最新在前）"""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM entity_occurrences WHERE entity_id = ? ORDER BY created_at DESC, rowid DESC",
                (entity_id,)
            ).fetchall()

        return [
            Occurrence(
                id=row['id'],
                entity_id=row['entity_id'],
                memory_id=row['memory_id'],
                context=row['context'],
                created_at=datetime.fromisoformat(row['created_at']),
            )
            for row in rows
        ]

    def count(self) -> int:
        """统计实体总数"""
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM entities").fetchone()[0]
