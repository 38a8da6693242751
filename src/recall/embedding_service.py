"""
文本嵌入服务模块

负责将文本转换为向量表示。优先调用本地 Ollama 嵌入模型服务，
服务不可用、超时、返回格式错误或模型未安装时，降级为基于哈希的
确定性合成向量（同一文本始终得到同一向量），保证整条检索链路在
无外部依赖时仍可运行。
"""

import hashlib
import logging
import math
import re
import time
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
import requests

from .models import EmbeddingStatus

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

_STOPWORDS = frozenset({
    "a", "an", "the", "is", "are", "was", "were", "be", "been", "have", "has", "had",
    "do", "does", "did", "will", "would", "could", "should", "can", "to", "of", "in",
    "for", "on", "with", "at", "by", "from", "as", "into", "about", "and", "but", "or",
    "not", "so", "this", "that", "these", "those", "it", "its", "i", "me", "my", "we",
    "our", "you", "your", "he", "she", "they", "them", "their", "what", "which", "who",
    "any", "some",
})

WORD_WEIGHT = 3.0
NGRAM_WEIGHT = 1.0
NGRAM_SIZES = (3, 4)


def _synthetic_features(text: str) -> Dict[str, float]:
    """文本 -> {特征: 权重}，顺序固定（按首次出现）"""
    words = _TOKEN_RE.findall(text.lower())

    counts: Dict[str, int] = {}
    for word in words:
        if len(word) > 1 and word not in _STOPWORDS:
            counts[f"w:{word}"] = counts.get(f"w:{word}", 0) + 1
        if len(word) > 2:
            padded = f"#{word}#"
            for n in NGRAM_SIZES:
                for i in range(len(padded) - n + 1):
                    gram = f"c:{padded[i:i + n]}"
                    counts[gram] = counts.get(gram, 0) + 1

    if not counts:
        # 无可用词元（纯标点、单字母等），整段文本作为唯一特征
        return {f"t:{text}": 1.0}

    return {
        feature: (WORD_WEIGHT if feature.startswith("w:") else NGRAM_WEIGHT) * (1.0 + math.log(count))
        for feature, count in counts.items()
    }


@lru_cache(maxsize=10000)
def _feature_vector(feature: str, dimension: int) -> np.ndarray:
    """特征 -> 确定性高斯向量（BLAKE2b 哈希作种子）"""
    digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
    rng = np.random.default_rng(int.from_bytes(digest, "little"))
    return rng.standard_normal(dimension)


class EmbeddingServiceError(Exception):
    """嵌入服务异常基类"""
    pass


class EmbeddingService:
    """
    文本嵌入服务

    使用 Ollama 的 /api/embed 接口（默认模型 mxbai-embed-large，1024 维），
    失败时回退到合成向量。健康检查结果缓存在实例上，
    在 health_check_interval 秒内不会重复探测。
    """

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "mxbai-embed-large",
        dimension: int = 1024,
        timeout: float = 30.0,
        health_timeout: float = 5.0,
        health_check_interval: float = 300.0,
        batch_size: int = 100,
        clock: Optional[Callable[[], float]] = None,
        session: Optional[requests.Session] = None
    ):
        """
        初始化嵌入服务

        Args:
            base_url: Ollama 服务地址
            model: 嵌入模型名称
            dimension: 向量维度
            timeout: 嵌入请求超时（秒）
            health_timeout: 健康检查超时（秒）
            health_check_interval: 健康检查结果缓存时长（秒）
            batch_size: 批量嵌入时每个请求的文本数量
            clock: 单调时钟（测试时可注入）
            session: HTTP 会话（测试时可注入）
        """
        if dimension <= 0:
            raise EmbeddingServiceError(f"Invalid embedding dimension: {dimension}")
        if batch_size <= 0:
            raise EmbeddingServiceError(f"Invalid batch size: {batch_size}")

        self.base_url = base_url.rstrip("/")
        self.model = model
        self.dimension = dimension
        self.timeout = timeout
        self.health_timeout = health_timeout
        self.health_check_interval = health_check_interval
        self.batch_size = batch_size
        self.clock = clock or time.monotonic
        self.session = session or requests.Session()

        # 健康检查缓存
        self._available: Optional[bool] = None
        self._last_health_check: Optional[float] = None
        self._last_error: Optional[str] = None

        logger.info(f"EmbeddingService initialized: model={model}, dimension={dimension}, url={self.base_url}")

    @property
    def embed_url(self) -> str:
        return f"{self.base_url}/api/embed"

    def check_status(self) -> EmbeddingStatus:
        """
        检查 Ollama 是否运行且模型已安装（结果带缓存）

        Returns:
            EmbeddingStatus
        """
        now = self.clock()
        if (
            self._last_health_check is not None
            and now - self._last_health_check < self.health_check_interval
        ):
            return EmbeddingStatus(available=bool(self._available), model=self.model, error=self._last_error)

        try:
            response = self.session.get(f"{self.base_url}/api/tags", timeout=self.health_timeout)
            response.raise_for_status()
            models = response.json().get("models") or []
            has_model = any(self.model in str(m.get("name", "")) for m in models)

            self._available = has_model
            self._last_error = None if has_model else (
                f"Model {self.model} not found. Run: ollama pull {self.model}"
            )

        except requests.Timeout:
            self._available = False
            self._last_error = "Ollama not responding (timeout)"
        except (requests.RequestException, ValueError, AttributeError) as e:
            self._available = False
            self._last_error = f"Ollama not available: {e}"

        self._last_health_check = now
        if not self._available:
            logger.debug(f"Embedding provider unavailable: {self._last_error}")

        return EmbeddingStatus(available=self._available, model=self.model, error=self._last_error)

    def embed(self, text: str) -> np.ndarray:
        """
        单文本嵌入

        Args:
            text: 输入文本（非空）

        Returns:
            float32 向量，长度为 dimension

        Raises:
            EmbeddingServiceError: 文本为空或类型错误
        """
        if not text or not isinstance(text, str):
            raise EmbeddingServiceError("Text must be a non-empty string")

        status = self.check_status()
        if not status.available:
            logger.warning(f"Ollama not available, using synthetic embeddings: {status.error}")
            return self.synthetic_embedding(text)

        try:
            return self._request_embeddings([text])[0]
        except (requests.RequestException, EmbeddingServiceError, ValueError) as e:
            logger.warning(f"Embedding generation failed, falling back to synthetic: {e}")
            return self.synthetic_embedding(text)

    def embed_batch(
        self,
        texts: Sequence[str],
        on_progress: Optional[Callable[[int, int], None]] = None
    ) -> List[np.ndarray]:
        """
        批量文本嵌入

        按 batch_size 分块请求；某一块失败时仅该块使用合成向量。

        Args:
            texts: 文本列表
            on_progress: 进度回调 (已完成数量, 总数)

        Returns:
            向量列表，与输入一一对应
        """
        if not texts:
            raise EmbeddingServiceError("Texts must be a non-empty list")
        if not all(t and isinstance(t, str) for t in texts):
            raise EmbeddingServiceError("All texts must be non-empty strings")

        total = len(texts)
        status = self.check_status()

        if not status.available:
            logger.warning(f"Ollama not available, using synthetic embeddings: {status.error}")
            results = []
            for i, text in enumerate(texts):
                results.append(self.synthetic_embedding(text))
                if on_progress:
                    on_progress(i + 1, total)
            return results

        results: List[np.ndarray] = []
        for start in range(0, total, self.batch_size):
            chunk = list(texts[start:start + self.batch_size])
            try:
                results.extend(self._request_embeddings(chunk))
            except (requests.RequestException, EmbeddingServiceError, ValueError) as e:
                logger.warning(
                    f"Batch embedding failed for chunk {start // self.batch_size}, "
                    f"falling back to synthetic: {e}"
                )
                results.extend(self.synthetic_embedding(text) for text in chunk)

            if on_progress:
                on_progress(min(start + self.batch_size, total), total)

        return results

    def _request_embeddings(self, inputs: List[str]) -> List[np.ndarray]:
        """调用 Ollama /api/embed，校验返回数量和维度"""
        payload: Dict[str, Any] = {
            "model": self.model,
            "input": inputs[0] if len(inputs) == 1 else inputs,
        }
        response = self.session.post(self.embed_url, json=payload, timeout=self.timeout)
        response.raise_for_status()

        data = response.json()
        embeddings = data.get("embeddings") if isinstance(data, dict) else None
        if not isinstance(embeddings, list) or len(embeddings) != len(inputs):
            raise EmbeddingServiceError("Invalid response format from Ollama")

        vectors = [np.asarray(e, dtype=np.float32) for e in embeddings]
        for vector in vectors:
            if vector.shape != (self.dimension,):
                raise EmbeddingServiceError(
                    f"Unexpected embedding shape {vector.shape}, expected ({self.dimension},)"
                )
        return vectors

    def synthetic_embedding(self, text: str) -> np.ndarray:
        """
        生成确定性合成向量（随机索引 + 字符 n-gram）

        特征分两类：去掉停用词后的整词（权重 3）和词内字符 3/4-gram（权重 1），
        重复出现按 1 + ln(次数) 加权。每个特征经 BLAKE2b 哈希得到随机种子，
        生成高斯向量；加权求和后归一化。词形相近的文本（decision / decided）
        因共享 n-gram 而相似度为正，同一文本始终得到逐位相同的向量。

        Args:
            text: 输入文本

        Returns:
            单位长度的 float32 向量
        """
        features = _synthetic_features(text)

        vector = np.zeros(self.dimension, dtype=np.float64)
        for feature, weight in features.items():
            vector += weight * _feature_vector(feature, self.dimension)

        norm = np.linalg.norm(vector)
        if norm == 0:
            # 理论上不会发生，退化时返回第一个基向量
            vector[0] = 1.0
            norm = 1.0

        return (vector / norm).astype(np.float32)

    @staticmethod
    def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
        """
        计算余弦相似度

        Args:
            a: 向量1
            b: 向量2

        Returns:
            相似度（-1 到 1），任一向量模为 0 时返回 0

        Raises:
            EmbeddingServiceError: 长度不一致
        """
        vec1 = np.asarray(a, dtype=np.float64)
        vec2 = np.asarray(b, dtype=np.float64)

        if vec1.shape != vec2.shape:
            raise EmbeddingServiceError(f"Embeddings must be same length: {vec1.shape} vs {vec2.shape}")

        norm1 = np.linalg.norm(vec1)
        norm2 = np.linalg.norm(vec2)
        if norm1 == 0 or norm2 == 0:
            return 0.0

        similarity = float(np.dot(vec1, vec2) / (norm1 * norm2))
        return max(-1.0, min(1.0, similarity))

    @staticmethod
    def serialize(vector: Sequence[float]) -> bytes:
        """向量 -> 小端 float32 字节串（SQLite BLOB）"""
        return np.asarray(vector, dtype="<f4").tobytes()

    @staticmethod
    def deserialize(blob: bytes) -> np.ndarray:
        """小端 float32 字节串 -> 向量"""
        if not isinstance(blob, (bytes, bytearray, memoryview)):
            raise EmbeddingServiceError(f"Blob must be bytes, got {type(blob).__name__}")
        if len(blob) % 4 != 0:
            raise EmbeddingServiceError(f"Blob length {len(blob)} is not a multiple of 4")
        return np.frombuffer(bytes(blob), dtype="<f4").astype(np.float32)

    def find_similar(
        self,
        query_vector: Sequence[float],
        candidates: Sequence[Any],
        threshold: float = 0.7,
        limit: int = 10,
        key: Callable[[Any], Any] = lambda c: c.embedding
    ) -> List[tuple]:
        """
        暴力扫描相似向量

        Args:
            query_vector: 查询向量
            candidates: 候选对象列表
            threshold: 相似度阈值
            limit: 返回数量
            key: 从候选对象取出向量（或 BLOB）的函数

        Returns:
            (候选对象, 相似度) 列表，按相似度降序
        """
        results = []
        for candidate in candidates:
            raw = key(candidate)
            if raw is None:
                continue
            vector = self.deserialize(raw) if isinstance(raw, (bytes, bytearray, memoryview)) else raw

            similarity = self.cosine_similarity(query_vector, vector)
            if similarity >= threshold:
                results.append((candidate, similarity))

        results.sort(key=lambda x: x[1], reverse=True)
        return results[:limit]

    def get_dimension(self) -> int:
        return self.dimension

    def get_config(self) -> Dict[str, Any]:
        """获取嵌入配置与当前模式"""
        return {
            'base_url': self.base_url,
            'embed_url': self.embed_url,
            'model': self.model,
            'dimension': self.dimension,
            'timeout': self.timeout,
            'batch_size': self.batch_size,
            'available': self._available,
            'mode': 'ollama' if self._available else 'mock',
        }
