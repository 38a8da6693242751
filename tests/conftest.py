"""
测试公共夹具

- 临时 SQLite 数据库上的记忆存储 / 实体存储
- 模拟 Ollama HTTP 接口的嵌入服务：按主题关键词返回向量
- 固定时钟
"""

import re
import uuid
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
import requests

from recall.embedding_service import EmbeddingService
from recall.entity_store import EntityStore
from recall.memory_store import MemoryStore
from recall.models import MemoryRecord
from recall.retriever import Retriever


FIXED_NOW = datetime(2026, 10, 1, 12, 0, 0)

# 维度 0: 数据库，1: 相机/缺陷，2: 设计，3: 其他（无主题词时使用）
TOPICS = [
    {"database", "sqlite", "postgresql"},
    {"camera", "vision", "bug", "bugs"},
    {"design", "gradient", "pink", "branding"},
]


def keyword_vector(text: str) -> list:
    """按主题关键词给出 4 维向量"""
    tokens = set(re.findall(r"\w+", text.lower()))
    vector = [1.0 if tokens & words else 0.0 for words in TOPICS]
    vector.append(0.0 if any(vector) else 1.0)
    return vector


def keyword_ollama_session() -> MagicMock:
    """模拟已安装 mxbai-embed-large 的 Ollama 服务"""
    def post(url, json=None, timeout=None):
        inputs = json["input"]
        if isinstance(inputs, str):
            inputs = [inputs]
        response = MagicMock()
        response.json.return_value = {"embeddings": [keyword_vector(t) for t in inputs]}
        return response

    session = MagicMock()
    session.get.return_value.json.return_value = {"models": [{"name": "mxbai-embed-large:latest"}]}
    session.post.side_effect = post
    return session


def make_keyword_embedder() -> EmbeddingService:
    return EmbeddingService(dimension=4, session=keyword_ollama_session())


def make_offline_embedder() -> EmbeddingService:
    """Ollama 不可达，全部走合成向量"""
    session = MagicMock()
    session.get.side_effect = requests.ConnectionError("connection refused")
    return EmbeddingService(session=session)


@pytest.fixture
def embedder():
    return make_keyword_embedder()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(db_path=str(tmp_path / "memories.db"))


@pytest.fixture
def entity_store(tmp_path):
    return EntityStore(db_path=str(tmp_path / "entities.db"))


@pytest.fixture
def retriever(memory_store, entity_store, embedder):
    return Retriever(
        memory_store=memory_store,
        entity_store=entity_store,
        embedding_service=embedder,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def make_memory():
    """构造记忆对象，默认在 FIXED_NOW 观察到"""
    def _make(**overrides):
        data = {
            "id": str(uuid.uuid4()),
            "type": "insight",
            "title": "Untitled",
            "content": "Some content",
            "confidence_score": 0.8,
            "times_observed": 1,
            "first_observed_at": FIXED_NOW,
            "last_observed_at": FIXED_NOW,
        }
        days_ago = overrides.pop("days_ago", None)
        if days_ago is not None:
            data["last_observed_at"] = FIXED_NOW - timedelta(days=days_ago)
        data.update(overrides)
        return MemoryRecord(**data)
    return _make


@pytest.fixture
def add_memory(memory_store, embedder, make_memory):
    """构造记忆、生成嵌入并写入存储"""
    def _add(embed=True, **overrides):
        memory = make_memory(**overrides)
        if embed:
            memory.embedding = embedder.serialize(embedder.embed(memory.content))
        memory_store.create_memory(memory)
        return memory
    return _add


@pytest.fixture
def scenario(add_memory, entity_store):
    """
    三条记忆 + 两个实体：

    a: decision（SQLite 决策），b: correction（Vision 相机缺陷），c: commitment（设计约定）
    实体 SQLite -> a，Vision -> b
    """
    a = add_memory(
        type="decision",
        title="Use SQLite for database",
        content="We decided to use SQLite with sqlite-vss for vector search instead of "
                "PostgreSQL because it simplifies deployment.",
        category="architecture",
        confidence_score=0.95,
        times_observed=3,
    )
    b = add_memory(
        type="correction",
        title="Fixed camera initialization bug",
        content="The Vision app camera had a race condition. Fixed by adding proper "
                "initialization wait logic.",
        category="bugs",
        confidence_score=0.88,
        times_observed=1,
    )
    c = add_memory(
        type="commitment",
        title="Always use pink gradient for Memory Lane",
        content="Memory Lane components should always use the pink-to-purple gradient "
                "(#ec4899 to #8b5cf6) for branding consistency.",
        category="design",
        confidence_score=0.92,
        times_observed=5,
    )

    sqlite = entity_store.create_entity("SQLite", "technology", context="Database technology")
    vision = entity_store.create_entity("Vision", "module", context="Vision module")
    entity_store.add_occurrence(sqlite.id, a.id, "SQLite database decision")
    entity_store.add_occurrence(vision.id, b.id, "Vision camera bug")

    return {"a": a, "b": b, "c": c, "sqlite": sqlite, "vision": vision}
