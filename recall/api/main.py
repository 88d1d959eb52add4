"""
HTTP surface: health, memory CRUD, search and streamed completions.

Users are identified by the ``X-User-Id`` header; token validation is left to
whatever sits in front of this service.
"""

import asyncio
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .schemas import (
    CompletionRequestModel,
    CreateMemoryRequest,
    HealthResponse,
    MemoryListResponse,
    MemoryResponse,
    SearchResponse,
    SearchResultItem,
    UpdateMemoryRequest
)
from ..core.config import (
    EMBED_PROVIDER, LLM_PROVIDER, VERSION, CacheSettings, CompletionDefaults,
    ExtractionSettings, HydeSettings, HYDE_CACHE_MAX_SIZE, HYDE_CACHE_TTL_SEC,
    debug_enabled, validate_config
)
from ..core.dao import MemoryStore
from ..core.errors import ProviderUnavailable, StorageFailure
from ..core.schema import Memory, MemoryEmbedding
from ..llm.client import IGenerationClient, create_generation_client
from ..llm.hyde import HydeGenerator
from ..pipeline.extraction import MemoryExtractor
from ..pipeline.orchestrator import CompletionConfiguration, CompletionOrchestrator, CompletionRequest
from ..util.logging import logger
from ..vector.cache import EmbeddingCache, HydeCache
from ..vector.embeddings import EmbeddingService, IEmbeddingProvider, create_embedding_provider
from ..vector.search import VectorSearchEngine

SEARCH_QUERY_MAX_LENGTH = 500


@dataclass
class Services:
    """One process-wide set of pipeline collaborators."""
    store: MemoryStore
    embedding_service: EmbeddingService
    client: IGenerationClient
    hyde: HydeGenerator
    search_engine: VectorSearchEngine
    extractor: MemoryExtractor
    orchestrator: CompletionOrchestrator
    embed_provider_name: str = EMBED_PROVIDER
    llm_provider_name: str = LLM_PROVIDER


def build_services(store: MemoryStore = None, embedding_provider: IEmbeddingProvider = None,
                   client: IGenerationClient = None, hyde_settings: HydeSettings = None,
                   completion_defaults: CompletionDefaults = None,
                   extraction_settings: ExtractionSettings = None,
                   cache_settings: CacheSettings = None,
                   hyde_cache_settings: CacheSettings = None) -> Services:
    """Wire the pipeline together. Anything not given is built from configuration."""
    cache_settings = cache_settings or CacheSettings()
    hyde_cache_settings = hyde_cache_settings or CacheSettings(HYDE_CACHE_MAX_SIZE, HYDE_CACHE_TTL_SEC)
    store = store or MemoryStore()
    provider = embedding_provider or create_embedding_provider()
    client = client or create_generation_client()

    embedding_service = EmbeddingService(
        provider, EmbeddingCache(cache_settings.max_size, cache_settings.ttl_sec)
    )
    hyde = HydeGenerator(
        client, embedding_service, hyde_settings or HydeSettings(),
        HydeCache(hyde_cache_settings.max_size, hyde_cache_settings.ttl_sec)
    )
    search_engine = VectorSearchEngine(store, embedding_service, hyde)
    extractor = MemoryExtractor(store, embedding_service, search_engine, extraction_settings)
    orchestrator = CompletionOrchestrator(
        client, embedding_service, search_engine, extractor, hyde, completion_defaults
    )

    return Services(
        store=store,
        embedding_service=embedding_service,
        client=client,
        hyde=hyde,
        search_engine=search_engine,
        extractor=extractor,
        orchestrator=orchestrator,
        embed_provider_name=type(provider).__name__,
        llm_provider_name=getattr(client, "provider_name", LLM_PROVIDER)
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    for issue in validate_config():
        logger.warning(f"Configuration issue: {issue}")
    return build_services()


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Resolve the calling user from the ``X-User-Id`` header."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="User ID not found")
    return x_user_id.strip()


# Initialize the FastAPI application
app = FastAPI(
    title="Recall API",
    version=VERSION,
    description="Personal memory store with retrieval-augmented, streamed answers",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={
        "message": "Invalid request",
        "errors": jsonable_encoder(exc.errors())
    })


@app.exception_handler(ProviderUnavailable)
async def provider_unavailable_handler(request: Request, exc: ProviderUnavailable):
    logger.error(f"Provider unavailable on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"message": "Search service temporarily unavailable"})


@app.exception_handler(StorageFailure)
async def storage_failure_handler(request: Request, exc: StorageFailure):
    logger.error(f"Storage failure on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"message": "Memory store temporarily unavailable"})


def _memory_response(memory: Memory) -> MemoryResponse:
    return MemoryResponse(
        id=memory.id,
        title=memory.title,
        content=memory.content,
        content_type=memory.content_type,
        metadata=memory.metadata,
        created_at=memory.created_at,
        updated_at=memory.updated_at
    )


async def _try_embed(services: Services, memory: Memory) -> Optional[MemoryEmbedding]:
    """Embed memory content, or return None so the embedding is built later."""
    try:
        vector = await services.embedding_service.embed(memory.embedding_text())
    except ProviderUnavailable as e:
        logger.warning(f"Embedding deferred for user {memory.user_id}: {e}")
        return None
    return MemoryEmbedding(memory_id=memory.id or "", vector=vector, model_name=services.embedding_service.model_name)


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(services: Services = Depends(get_services)):
    """Check system health."""
    db_health = services.store.health_check()

    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        embed_provider=services.embed_provider_name,
        llm_provider=services.llm_provider_name,
        hyde_enabled=services.hyde.enabled
    )


@app.post("/memories", response_model=MemoryResponse, status_code=201)
async def create_memory(req: CreateMemoryRequest, user_id: str = Depends(get_current_user_id),
                        services: Services = Depends(get_services)):
    """Store a memory and embed it when the provider is reachable."""
    memory = Memory(
        user_id=user_id,
        content=req.content,
        title=req.title,
        content_type=req.content_type,
        metadata=req.metadata or {}
    )
    embedding = await _try_embed(services, memory)
    memory = await services.store.create(memory, embedding)
    return _memory_response(memory)


@app.get("/memories", response_model=MemoryListResponse)
async def list_memories(page: int = 1, page_size: int = Query(default=20, alias="pageSize"),
                        user_id: str = Depends(get_current_user_id),
                        services: Services = Depends(get_services)):
    if page < 1:
        raise HTTPException(status_code=400, detail="Page must be greater than 0")
    if not 1 <= page_size <= 100:
        raise HTTPException(status_code=400, detail="PageSize must be between 1 and 100")

    memories = await services.store.list_by_user(user_id, page, page_size)
    total = await services.store.count_by_user(user_id)
    return MemoryListResponse(
        memories=[_memory_response(m) for m in memories],
        total_count=total,
        page=page,
        page_size=page_size
    )


# Define /memories/search BEFORE /memories/{memory_id} to avoid path parameter conflict
@app.get("/memories/search", response_model=SearchResponse)
async def search_memories(query: Optional[str] = None, limit: int = 10, threshold: float = 0.7,
                          use_hyde: bool = Query(default=True, alias="useHyde"), user_id: str = Depends(get_current_user_id),
                          services: Services = Depends(get_services)):
    """Semantic search over the caller's memories."""
    if not query or not query.strip():
        raise HTTPException(status_code=400, detail="Query parameter is required")
    if len(query) > SEARCH_QUERY_MAX_LENGTH:
        raise HTTPException(status_code=400, detail=f"Query must be {SEARCH_QUERY_MAX_LENGTH} characters or less")
    if not 1 <= limit <= 50:
        raise HTTPException(status_code=400, detail="Limit must be between 1 and 50")
    if not 0.0 <= threshold <= 1.0:
        raise HTTPException(status_code=400, detail="Threshold must be between 0.0 and 1.0")

    outcome = await services.search_engine.search(user_id, query.strip(), limit, threshold, use_hyde)

    return SearchResponse(
        results=[
            SearchResultItem(
                id=r.memory.id,
                title=r.memory.title,
                content=r.memory.content,
                content_type=r.memory.content_type,
                similarity_score=round(r.similarity_score, 4),
                combined_score=round(r.combined_score, 4),
                search_method=r.search_method,
                hyde_score=round(r.hyde_score, 4) if r.hyde_score is not None else None,
                created_at=r.memory.created_at,
                metadata=r.memory.metadata
            )
            for r in outcome.results
        ],
        query=outcome.query,
        result_count=outcome.result_count,
        execution_time_ms=outcome.execution_time_ms,
        hyde_used=outcome.hyde_used,
        hypothetical_document=outcome.hypothetical_document
    )


@app.get("/memories/{memory_id}", response_model=MemoryResponse)
async def get_memory(memory_id: str, user_id: str = Depends(get_current_user_id),
                     services: Services = Depends(get_services)):
    memory = await services.store.get(memory_id, user_id)
    if memory is None:
        raise HTTPException(status_code=404, detail="Memory not found")
    return _memory_response(memory)


@app.put("/memories/{memory_id}", response_model=MemoryResponse)
async def update_memory(memory_id: str, req: UpdateMemoryRequest, user_id: str = Depends(get_current_user_id),
                        services: Services = Depends(get_services)):
    """Update a memory; changed content is re-embedded."""
    memory = await services.store.get(memory_id, user_id)
    if memory is None:
        raise HTTPException(status_code=404, detail="Memory not found")

    content_changed = req.content is not None and req.content != memory.content
    if req.title is not None:
        memory.title = req.title
    if req.content is not None:
        memory.content = req.content
    if req.content_type is not None:
        memory.content_type = req.content_type
    if req.metadata is not None:
        memory.metadata = req.metadata

    embedding = await _try_embed(services, memory) if content_changed else None
    memory = await services.store.update(memory, embedding, clear_embedding=content_changed and embedding is None)
    return _memory_response(memory)


@app.delete("/memories/{memory_id}", status_code=204)
async def delete_memory(memory_id: str, user_id: str = Depends(get_current_user_id),
                        services: Services = Depends(get_services)):
    deleted = await services.store.delete(memory_id, user_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Memory not found")


def _to_completion_request(req: CompletionRequestModel) -> CompletionRequest:
    configuration = None
    if req.configuration is not None:
        configuration = CompletionConfiguration(**req.configuration.model_dump())
    return CompletionRequest(message=req.message, configuration=configuration)


def sse_event(event: str, data: str) -> str:
    """Format one server-sent event; multi-line data becomes several data lines."""
    lines = "".join(f"data: {line}\n" for line in data.split("\n"))
    return f"event: {event}\n{lines}\n"


STREAM_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


@app.post("/completion")
async def completion(req: CompletionRequestModel, request: Request, user_id: str = Depends(get_current_user_id),
                     services: Services = Depends(get_services)):
    """Stream the answer as plain text chunks."""
    completion_request = _to_completion_request(req)

    async def text_stream():
        cancel_event = asyncio.Event()
        async for chunk in services.orchestrator.process(completion_request, user_id, cancel_event):
            if await request.is_disconnected():
                logger.info(f"Client disconnected during completion for user {user_id}")
                cancel_event.set()
                break
            yield chunk

    return StreamingResponse(text_stream(), media_type="text/plain; charset=utf-8", headers=STREAM_HEADERS)


@app.post("/completion/sse")
async def completion_sse(req: CompletionRequestModel, request: Request, user_id: str = Depends(get_current_user_id),
                         services: Services = Depends(get_services)):
    """Stream the answer as server-sent events: connected, data..., done."""
    completion_request = _to_completion_request(req)

    async def event_stream():
        cancel_event = asyncio.Event()
        yield sse_event("connected", "Connection established")
        try:
            async for chunk in services.orchestrator.process(completion_request, user_id, cancel_event):
                if await request.is_disconnected():
                    logger.info(f"Client disconnected during SSE completion for user {user_id}")
                    cancel_event.set()
                    return
                yield sse_event("data", chunk)
        except Exception as e:
            logger.error(f"SSE completion failed for user {user_id}: {e}")
            yield sse_event("error", "Failed to process completion request")
            return
        yield sse_event("done", "Completion finished")

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=STREAM_HEADERS)
