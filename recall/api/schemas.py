"""
Request and response models for the HTTP API. JSON field names are camelCase.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from ..core.schema import CONTENT_TYPES

TITLE_MAX_LENGTH = 200
CONTENT_MAX_LENGTH = 10000
MESSAGE_MAX_LENGTH = 10000


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _check_content_type(v):
    if v is not None and v not in CONTENT_TYPES:
        raise ValueError(f'contentType must be one of: {list(CONTENT_TYPES)}')
    return v


def _check_title(v):
    if v is not None and len(v) > TITLE_MAX_LENGTH:
        raise ValueError(f'title cannot exceed {TITLE_MAX_LENGTH} characters')
    return v


class CreateMemoryRequest(CamelModel):
    content: str
    title: Optional[str] = None
    content_type: str = "text"
    metadata: Optional[Dict[str, Any]] = None

    @field_validator('content')
    @classmethod
    def content_must_be_valid(cls, v):
        if not v.strip():
            raise ValueError('content cannot be empty')
        if len(v) > CONTENT_MAX_LENGTH:
            raise ValueError(f'content cannot exceed {CONTENT_MAX_LENGTH} characters')
        return v

    @field_validator('title')
    @classmethod
    def title_must_be_valid(cls, v):
        return _check_title(v)

    @field_validator('content_type')
    @classmethod
    def content_type_must_be_valid(cls, v):
        return _check_content_type(v)


class UpdateMemoryRequest(CamelModel):
    content: Optional[str] = None
    title: Optional[str] = None
    content_type: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator('content')
    @classmethod
    def content_must_be_valid(cls, v):
        if v is not None:
            if not v.strip():
                raise ValueError('content cannot be empty')
            if len(v) > CONTENT_MAX_LENGTH:
                raise ValueError(f'content cannot exceed {CONTENT_MAX_LENGTH} characters')
        return v

    @field_validator('title')
    @classmethod
    def title_must_be_valid(cls, v):
        return _check_title(v)

    @field_validator('content_type')
    @classmethod
    def content_type_must_be_valid(cls, v):
        return _check_content_type(v)


class MemoryResponse(CamelModel):
    id: str
    title: Optional[str] = None
    content: str
    content_type: str
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime


class MemoryListResponse(CamelModel):
    memories: List[MemoryResponse]
    total_count: int
    page: int
    page_size: int


class SearchResultItem(CamelModel):
    id: str
    title: Optional[str] = None
    content: str
    content_type: str
    similarity_score: float
    combined_score: float
    search_method: str
    hyde_score: Optional[float] = None
    created_at: datetime
    metadata: Optional[Dict[str, Any]] = None


class SearchResponse(CamelModel):
    results: List[SearchResultItem]
    query: str
    result_count: int
    execution_time_ms: int
    hyde_used: bool = False
    hypothetical_document: Optional[str] = None


class CompletionConfigurationModel(CamelModel):
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    enable_memory_search: Optional[bool] = None
    max_memory_results: Optional[int] = None
    memory_threshold: Optional[float] = None

    # "model" collides with pydantic's protected namespace
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())

    @field_validator('temperature')
    @classmethod
    def temperature_must_be_valid(cls, v):
        if v is not None and not 0.0 <= v <= 2.0:
            raise ValueError('temperature must be between 0.0 and 2.0')
        return v

    @field_validator('max_tokens')
    @classmethod
    def max_tokens_must_be_valid(cls, v):
        if v is not None and v < 1:
            raise ValueError('maxTokens must be >= 1')
        return v

    @field_validator('max_memory_results')
    @classmethod
    def max_memory_results_must_be_valid(cls, v):
        if v is not None and not 1 <= v <= 20:
            raise ValueError('maxMemoryResults must be between 1 and 20')
        return v

    @field_validator('memory_threshold')
    @classmethod
    def memory_threshold_must_be_valid(cls, v):
        if v is not None and not 0.0 <= v <= 1.0:
            raise ValueError('memoryThreshold must be between 0.0 and 1.0')
        return v


class CompletionRequestModel(CamelModel):
    message: str
    configuration: Optional[CompletionConfigurationModel] = None

    @field_validator('message')
    @classmethod
    def message_must_be_valid(cls, v):
        if not v.strip():
            raise ValueError('message cannot be empty')
        if len(v) > MESSAGE_MAX_LENGTH:
            raise ValueError(f'message cannot exceed {MESSAGE_MAX_LENGTH} characters')
        return v


class HealthResponse(CamelModel):
    status: str
    version: str
    db_health: bool
    embed_provider: str
    llm_provider: str
    hyde_enabled: bool
