"""
记忆管理器测试（配置加载 + 端到端流程）
"""

import pytest

from recall.memory_manager import DEFAULT_CONFIG, MemoryManager, MemoryManagerError
from recall.retriever import InvalidFeedbackError

from conftest import make_keyword_embedder


@pytest.fixture
def manager(tmp_path):
    config = {
        'storage': {
            'memories_db': str(tmp_path / "memories.db"),
            'entities_db': str(tmp_path / "entities.db"),
        },
    }
    return MemoryManager(config=config, embedding_service=make_keyword_embedder())


def test_loads_yaml_config(tmp_path):
    config_file = tmp_path / "memory_config.yaml"
    config_file.write_text(
        "storage:\n"
        f"  memories_db: {tmp_path / 'm.db'}\n"
        f"  entities_db: {tmp_path / 'e.db'}\n"
        "retrieval:\n"
        "  default_limit: 3\n",
        encoding="utf-8",
    )

    manager = MemoryManager(config_path=str(config_file), embedding_service=make_keyword_embedder())

    assert manager.config['retrieval']['default_limit'] == 3
    assert manager.config['retrieval']['semantic_threshold'] == 0.4
    assert manager.retriever.default_limit == 3
    assert (tmp_path / "m.db").exists()
    assert (tmp_path / "e.db").exists()


@pytest.mark.parametrize("content", [None, "retrieval: [unclosed\n"])
def test_missing_or_broken_config_uses_defaults(tmp_path, monkeypatch, content):
    monkeypatch.chdir(tmp_path)
    config_file = tmp_path / "memory_config.yaml"
    if content is not None:
        config_file.write_text(content, encoding="utf-8")

    manager = MemoryManager(config_path=str(config_file), embedding_service=make_keyword_embedder())

    assert manager.config == DEFAULT_CONFIG
    assert (tmp_path / "data" / "memory" / "memories.db").exists()


def test_default_embedding_service_from_config(tmp_path):
    config = {
        'storage': {
            'memories_db': str(tmp_path / "memories.db"),
            'entities_db': str(tmp_path / "entities.db"),
        },
        'embedding': {'model': 'nomic-embed-text', 'dimension': 768},
    }

    manager = MemoryManager(config=config)

    assert manager.embedding_service.model == 'nomic-embed-text'
    assert manager.embedding_service.get_dimension() == 768


def test_add_link_and_retrieve(manager):
    decision = manager.add_memory("decision", "Use SQLite", "We use SQLite as the database", confidence_score=0.9)
    bug = manager.add_memory("correction", "Camera bug", "The camera had a race condition", confidence_score=0.8)
    vision_id = manager.link_entity("Vision", bug, entity_type="module")

    results = manager.retrieve("What about Vision?", session_id="session-1")

    assert [r.memory.id for r in results] == [bug]
    assert results[0].retrieval_method == "hybrid"
    assert decision not in [r.memory.id for r in results]
    assert manager.link_entity("vision", decision) == vision_id

    stats = manager.get_statistics()
    assert stats['total_memories'] == 2
    assert stats['total_entities'] == 1
    assert stats['total_recalls'] == 1
    assert manager.memory_store.get_by_id(bug).recall_count == 1


def test_retrieve_with_explicit_entities(manager):
    decision = manager.add_memory("decision", "Use SQLite", "We use SQLite as the database")
    manager.link_entity("SQLite", decision, entity_type="technology")

    results = manager.retrieve("design notes", entity_refs=["SQLite"])

    assert [r.memory.id for r in results] == [decision]
    assert results[0].retrieval_method == "entity"


def test_add_memory_rejects_invalid_type(manager):
    with pytest.raises(MemoryManagerError):
        manager.add_memory("rumour", "title", "content")

    with pytest.raises(MemoryManagerError):
        manager.add_memory("decision", "title", "content", confidence_score=1.5)

    assert manager.memory_store.count() == 0


def test_embed_pending(manager):
    manager.add_memory("insight", "one", "database notes", embed=False)
    manager.add_memory("insight", "two", "camera notes", embed=False)
    progress = []

    embedded = manager.embed_pending(on_progress=lambda done, total: progress.append((done, total)))

    assert embedded == 2
    assert progress[-1] == (2, 2)
    assert manager.get_statistics()['pending_embeddings'] == 0
    assert manager.embed_pending() == 0


def test_submit_feedback(manager):
    memory_id = manager.add_memory("insight", "one", "database notes")

    assert manager.submit_feedback(memory_id, "session-1", "negative") is True
    assert manager.memory_store.get_by_id(memory_id).negative_feedback == 1

    with pytest.raises(InvalidFeedbackError):
        manager.submit_feedback(memory_id, "session-1", "meh")


def test_retrieve_without_query(manager):
    manager.add_memory("insight", "one", "database notes")

    assert manager.retrieve(None) == []
    assert manager.retrieve("") == []
