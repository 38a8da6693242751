"""
嵌入服务测试

所有网络调用都用 unittest.mock 替换，无需真实 Ollama 服务。
"""

from unittest.mock import MagicMock

import numpy as np
import pytest
import requests

from recall.embedding_service import EmbeddingService, EmbeddingServiceError


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_response(payload) -> MagicMock:
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


def tags_response(*names) -> MagicMock:
    return make_response({"models": [{"name": n} for n in names]})


def make_service(session=None, clock=None, **kwargs) -> EmbeddingService:
    return EmbeddingService(session=session or MagicMock(), clock=clock or FakeClock(), **kwargs)


def offline_session() -> MagicMock:
    session = MagicMock()
    session.get.side_effect = requests.ConnectionError("connection refused")
    return session


# ── 合成向量 ─────────────────────────────────────────────────────────

def test_synthetic_embedding_is_deterministic():
    first = make_service().synthetic_embedding("We decided to use SQLite")
    second = make_service().synthetic_embedding("We decided to use SQLite")

    assert first.dtype == np.float32
    assert first.tobytes() == second.tobytes()


@pytest.mark.parametrize("text", [
    "hello",
    "The Vision app camera had a race condition.",
    "记忆检索测试",
    "!!!",
    "a " * 200,
])
def test_synthetic_embedding_has_unit_length(text):
    vector = make_service().synthetic_embedding(text)

    assert vector.shape == (1024,)
    assert np.linalg.norm(vector) == pytest.approx(1.0, abs=1e-5)


def test_synthetic_embedding_shared_words_are_closer():
    service = make_service()
    camera = service.synthetic_embedding("camera race condition")
    camera_bug = service.synthetic_embedding("camera bug")
    gradient = service.synthetic_embedding("pink gradient branding")

    related = service.cosine_similarity(camera, camera_bug)
    unrelated = service.cosine_similarity(camera, gradient)

    assert related > unrelated


def test_synthetic_embedding_related_word_forms_overlap():
    service = make_service()
    decision = service.synthetic_embedding("decision")
    decided = service.synthetic_embedding("decided")
    gradient = service.synthetic_embedding("gradient")

    assert service.cosine_similarity(decision, decided) > 0.05
    assert service.cosine_similarity(decision, decided) > service.cosine_similarity(decision, gradient)


def test_synthetic_embedding_function_words_weigh_little():
    service = make_service()

    assert service.cosine_similarity(
        service.synthetic_embedding("about the camera"),
        service.synthetic_embedding("camera"),
    ) > 0.6


# ── 余弦相似度 / 序列化 ─────────────────────────────────────────────

def test_cosine_similarity_bounds():
    rng = np.random.default_rng(7)
    for _ in range(50):
        a = rng.standard_normal(16)
        b = rng.standard_normal(16)
        assert -1.0 <= EmbeddingService.cosine_similarity(a, b) <= 1.0

    v = rng.standard_normal(16)
    assert EmbeddingService.cosine_similarity(v, v) == pytest.approx(1.0)
    assert EmbeddingService.cosine_similarity(v, -v) == pytest.approx(-1.0)


def test_cosine_similarity_zero_vector_is_zero():
    assert EmbeddingService.cosine_similarity([0.0, 0.0, 0.0], [1.0, 2.0, 3.0]) == 0.0
    assert EmbeddingService.cosine_similarity([1.0, 2.0, 3.0], [0.0, 0.0, 0.0]) == 0.0


def test_cosine_similarity_length_mismatch():
    with pytest.raises(EmbeddingServiceError):
        EmbeddingService.cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


def test_serialize_round_trip():
    vector = make_service().synthetic_embedding("round trip")
    blob = EmbeddingService.serialize(vector)

    assert len(blob) == 1024 * 4
    assert np.array_equal(EmbeddingService.deserialize(blob), vector)


def test_deserialize_rejects_truncated_blob():
    with pytest.raises(EmbeddingServiceError):
        EmbeddingService.deserialize(b"\x00\x00\x80")


def test_find_similar_filters_and_sorts():
    service = make_service(dimension=2)
    candidates = [
        ("x", EmbeddingService.serialize([1.0, 0.0])),
        ("diag", EmbeddingService.serialize([1.0, 1.0])),
        ("y", EmbeddingService.serialize([0.0, 1.0])),
        ("none", None),
    ]

    results = service.find_similar([1.0, 0.0], candidates, threshold=0.5, key=lambda c: c[1])

    assert [c[0] for c, _ in results] == ["x", "diag"]
    assert results[0][1] == pytest.approx(1.0)


# ── Ollama 调用与降级 ───────────────────────────────────────────────

def test_embed_rejects_empty_text():
    with pytest.raises(EmbeddingServiceError):
        make_service().embed("")


def test_embed_falls_back_when_server_unreachable():
    service = make_service(session=offline_session())

    vector = service.embed("database decision")

    assert np.array_equal(vector, service.synthetic_embedding("database decision"))
    assert service.get_config()['mode'] == 'mock'


def test_status_reports_missing_model():
    session = MagicMock()
    session.get.return_value = tags_response("llama3:latest")
    service = make_service(session=session)

    status = service.check_status()

    assert status.available is False
    assert "ollama pull mxbai-embed-large" in status.error


def test_health_check_is_cached_for_interval():
    session = offline_session()
    clock = FakeClock()
    service = make_service(session=session, clock=clock, health_check_interval=300)

    service.embed("one")
    service.embed("two")
    assert session.get.call_count == 1

    clock.advance(301)
    service.embed("three")
    assert session.get.call_count == 2


def test_embed_uses_server_vector():
    session = MagicMock()
    session.get.return_value = tags_response("mxbai-embed-large:latest")
    session.post.return_value = make_response({"embeddings": [[0.1, 0.2, 0.3, 0.4]]})
    service = make_service(session=session, dimension=4)

    vector = service.embed("hello")

    assert np.allclose(vector, [0.1, 0.2, 0.3, 0.4])
    _, kwargs = session.post.call_args
    assert kwargs["json"] == {"model": "mxbai-embed-large", "input": "hello"}


@pytest.mark.parametrize("payload", [
    {},
    {"embeddings": []},
    {"embeddings": [[0.1, 0.2]]},
    ["not", "a", "dict"],
])
def test_embed_falls_back_on_malformed_response(payload):
    session = MagicMock()
    session.get.return_value = tags_response("mxbai-embed-large")
    session.post.return_value = make_response(payload)
    service = make_service(session=session, dimension=4)

    vector = service.embed("hello")

    assert np.array_equal(vector, service.synthetic_embedding("hello"))


def test_embed_falls_back_on_timeout():
    session = MagicMock()
    session.get.return_value = tags_response("mxbai-embed-large")
    session.post.side_effect = requests.Timeout("slow")
    service = make_service(session=session, dimension=4)

    assert service.embed("hello").shape == (4,)


# ── 批量嵌入 ────────────────────────────────────────────────────────

def test_embed_batch_partial_failure_only_affects_chunk():
    session = MagicMock()
    session.get.return_value = tags_response("mxbai-embed-large")
    session.post.side_effect = [
        make_response({"embeddings": [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]}),
        requests.ConnectionError("dropped"),
    ]
    service = make_service(session=session, dimension=3, batch_size=2)
    progress = []

    vectors = service.embed_batch(["a", "b", "c"], on_progress=lambda done, total: progress.append((done, total)))

    assert len(vectors) == 3
    assert np.allclose(vectors[0], [1.0, 0.0, 0.0])
    assert np.allclose(vectors[1], [0.0, 1.0, 0.0])
    assert np.array_equal(vectors[2], service.synthetic_embedding("c"))
    assert progress == [(2, 3), (3, 3)]


def test_embed_batch_offline_reports_every_item():
    service = make_service(session=offline_session(), dimension=8)
    progress = []

    vectors = service.embed_batch(["x", "y"], on_progress=lambda done, total: progress.append(done))

    assert [v.shape for v in vectors] == [(8,), (8,)]
    assert progress == [1, 2]


@pytest.mark.parametrize("texts", [[], ["ok", ""], ["ok", None]])
def test_embed_batch_validates_input(texts):
    with pytest.raises(EmbeddingServiceError):
        make_service().embed_batch(texts)
