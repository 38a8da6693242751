"""
数据模型定义

定义记忆检索模块使用的核心数据结构：记忆、实体、实体出现记录，
以及按检索来源区分的检索结果（entity / semantic / hybrid）。
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class MemoryType(str, Enum):
    """记忆类型枚举"""
    CORRECTION = "correction"  # 纠错
    DECISION = "decision"  # 决策
    COMMITMENT = "commitment"  # 约定
    INSIGHT = "insight"
    LEARNING = "learning"
    CONFIDENCE = "confidence"
    PATTERN_SEED = "pattern_seed"
    CROSS_AGENT = "cross_agent"
    WORKFLOW_NOTE = "workflow_note"
    GAP = "gap"  # 知识缺口


class EntityType(str, Enum):
    """实体类型枚举（规范集合，存储层同样接受其他字符串）"""
    PERSON = "person"
    PROJECT = "project"
    BUSINESS = "business"
    LOCATION = "location"


class RetrievalMethod(str, Enum):
    """检索来源"""
    ENTITY = "entity"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


class FeedbackType(str, Enum):
    """用户反馈类型"""
    POSITIVE = "positive"
    NEGATIVE = "negative"


class MemoryRecord(BaseModel):
    """记忆数据模型"""

    id: str = Field(..., description="唯一标识符（UUID）")
    type: MemoryType = Field(..., description="记忆类型")
    category: Optional[str] = Field(default=None, description="分类")
    title: str = Field(..., description="标题")
    content: str = Field(..., description="正文（用于嵌入和关键词匹配）")
    source_chunk: Optional[str] = Field(default=None, description="来源对话片段")
    confidence_score: float = Field(default=0.5, ge=0.0, le=1.0, description="置信度")
    times_observed: int = Field(default=1, ge=1, description="被观察到的次数")
    recall_count: int = Field(default=0, ge=0, description="被召回次数")
    positive_feedback: int = Field(default=0, ge=0, description="正反馈计数")
    negative_feedback: int = Field(default=0, ge=0, description="负反馈计数")
    first_observed_at: datetime = Field(default_factory=datetime.now, description="首次观察时间")
    last_observed_at: datetime = Field(default_factory=datetime.now, description="最近观察时间")
    embedding: Optional[bytes] = Field(default=None, description="序列化后的嵌入向量（float32）")

    class Config:
        use_enum_values = True

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MemoryRecord':
        """从字典（或数据库行）创建对象"""
        data = dict(data)
        for key in ('first_observed_at', 'last_observed_at'):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
            elif data.get(key) is None:
                data.pop(key, None)
        return cls(**data)


class EntityRecord(BaseModel):
    """实体数据模型（人、项目、组织、地点等）"""

    id: str = Field(..., description="唯一标识符（UUID）")
    name: str = Field(..., description="规范名称")
    type: str = Field(..., description="实体类型")
    slug: str = Field(..., description="URL 安全的短名")
    aliases: List[str] = Field(default_factory=list, description="别名列表")
    context: Optional[str] = Field(default=None, description="描述")
    created_at: datetime = Field(default_factory=datetime.now)


class Occurrence(BaseModel):
    """实体在某条记忆中的出现记录"""

    id: str
    entity_id: str
    memory_id: str
    context: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)


class _ResultBase(BaseModel):
    """检索结果公共字段：记忆投影 + 重排序得分"""

    memory: MemoryRecord
    final_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @property
    def id(self) -> str:
        return self.memory.id

    @property
    def similarity_or_zero(self) -> float:
        return getattr(self, 'similarity', 0.0)


class EntityResult(_ResultBase):
    """实体路径检索结果"""

    retrieval_method: Literal["entity"] = "entity"
    entity_match_score: float = 1.0
    matched_entity: str


class SemanticResult(_ResultBase):
    """语义路径检索结果"""

    retrieval_method: Literal["semantic"] = "semantic"
    similarity: float = Field(..., ge=-1.0, le=1.0)


class HybridResult(_ResultBase):
    """两条路径同时命中的检索结果"""

    retrieval_method: Literal["hybrid"] = "hybrid"
    entity_match_score: float = 1.0
    matched_entity: str
    similarity: float = Field(..., ge=-1.0, le=1.0)


RetrievalResult = Annotated[
    Union[EntityResult, SemanticResult, HybridResult],
    Field(discriminator="retrieval_method"),
]


class RecallLogEntry(BaseModel):
    """召回日志（session_recalls 表的一行）"""

    id: str
    session_id: Optional[str] = None
    memory_id: str
    query_text: str
    similarity_score: Optional[float] = None
    final_rank: int
    recalled_at: datetime = Field(default_factory=datetime.now)


class EmbeddingStatus(BaseModel):
    """嵌入服务健康检查结果"""

    available: bool
    model: str
    error: Optional[str] = None
