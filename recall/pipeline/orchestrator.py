"""
Completion pipeline: evaluation, extraction, HyDE, retrieval, context assembly
and streamed generation for one user message.

Every stage before generation is optional and degrades to a skip. Generation
failures end the stream with one readable inline message instead of an
exception.
"""

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from ..core.config import CompletionDefaults
from ..core.errors import ProviderUnavailable, StreamTransportFailure
from ..core.schema import SearchResult
from ..llm.client import IGenerationClient
from ..llm.hyde import HydeGenerator
from ..llm.prompts import FINAL_RESPONSE_PROMPT, MEMORY_EVALUATION_PROMPT
from ..util.logging import logger
from ..vector.embeddings import EmbeddingService
from ..vector.search import VectorSearchEngine
from .extraction import MemoryExtractor
from .stages import Ok, run_stage

STREAM_QUEUE_SIZE = 64
ERROR_FRAGMENT = "\n\n❌ **{message}**"
GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again or contact support if the issue persists."

_SENTINEL = object()
_CANCELLED = object()


@dataclass
class CompletionConfiguration:
    """Per-request overrides; ``None`` falls back to the process defaults."""
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    enable_memory_search: Optional[bool] = None
    max_memory_results: Optional[int] = None
    memory_threshold: Optional[float] = None


@dataclass
class CompletionRequest:
    message: str
    configuration: Optional[CompletionConfiguration] = None


def build_prompt(results: List[SearchResult], analysis: Optional[str], message: str) -> str:
    """Assemble the final prompt from retrieved memories, the memory analysis and the query."""
    lines = []
    if results:
        lines.extend(["Relevant context from your knowledge base:", ""])
        for result in results:
            lines.append(f"**{result.memory.title or 'Memory'}** (Relevance: {result.similarity_score:.1%})")
            lines.append(result.memory.content)
            lines.append("")
        lines.extend(["---", ""])

    if analysis:
        lines.extend([f"Memory Analysis: {analysis}", ""])

    lines.extend(["User Query:", message])
    return "\n".join(lines)


class CompletionOrchestrator:
    """Runs the retrieval-and-generation pipeline for one request at a time."""

    def __init__(self, client: IGenerationClient, embedding_service: EmbeddingService,
                 search_engine: VectorSearchEngine, extractor: MemoryExtractor,
                 hyde: HydeGenerator, defaults: CompletionDefaults = None):
        self.client = client
        self.embedding_service = embedding_service
        self.search_engine = search_engine
        self.extractor = extractor
        self.hyde = hyde
        self.defaults = defaults or CompletionDefaults()

    def _resolve(self, configuration: Optional[CompletionConfiguration]) -> CompletionConfiguration:
        configuration = configuration or CompletionConfiguration()
        defaults = self.defaults

        def pick(value, default):
            return default if value is None else value

        return CompletionConfiguration(
            model=pick(configuration.model, defaults.model),
            temperature=pick(configuration.temperature, defaults.temperature),
            max_tokens=pick(configuration.max_tokens, defaults.max_tokens),
            enable_memory_search=pick(configuration.enable_memory_search, defaults.enable_memory_search),
            max_memory_results=pick(configuration.max_memory_results, defaults.max_memory_results),
            memory_threshold=pick(configuration.memory_threshold, defaults.memory_threshold)
        )

    async def process(self, request: CompletionRequest, user_id: str,
                      cancel_event: asyncio.Event = None) -> AsyncIterator[str]:
        """Yield the answer to ``request.message`` as text chunks.

        Setting ``cancel_event`` (or closing the generator) stops the relay
        promptly; memories already persisted stay persisted.
        """
        config = self._resolve(request.configuration)
        logger.log_pipeline_stage("start", "started", user_id, {
            "memory_search": config.enable_memory_search,
            "model": config.model
        })

        prompt = await self.prepare_prompt(request.message, config, user_id, cancel_event)
        if prompt is None:
            logger.log_pipeline_stage("generation", "cancelled", user_id)
            return

        async for chunk in self._relay(prompt, config, user_id, cancel_event):
            yield chunk

    async def prepare_prompt(self, message: str, config: CompletionConfiguration, user_id: str,
                             cancel_event: asyncio.Event = None) -> Optional[str]:
        """Run the optional stages and return the final prompt, or None if cancelled."""
        analysis = None
        results: List[SearchResult] = []

        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        if config.enable_memory_search:
            if self.defaults.enable_memory_evaluation:
                evaluation = await run_stage(
                    "memory_evaluation",
                    lambda: self.client.complete(
                        message,
                        system_prompt=MEMORY_EVALUATION_PROMPT,
                        model=self.defaults.evaluation_model,
                        temperature=self.defaults.temperature,
                        max_tokens=self.defaults.max_tokens
                    ),
                    timeout=self.defaults.request_timeout_sec,
                    user_id=user_id
                )
                if isinstance(evaluation, Ok) and not cancelled():
                    extraction = await run_stage(
                        "memory_extraction",
                        lambda: self.extractor.extract(evaluation.value, user_id),
                        user_id=user_id
                    )
                    if isinstance(extraction, Ok):
                        analysis = extraction.value.summary_text

            if cancelled():
                return None

            hyde = await run_stage("hyde", lambda: self.hyde.generate(message), user_id=user_id)
            search_text = hyde.value if isinstance(hyde, Ok) else message

            if cancelled():
                return None

            embedding = await run_stage("embedding", lambda: self.embedding_service.embed(search_text), user_id=user_id)
            if isinstance(embedding, Ok):
                search = await run_stage(
                    "vector_search",
                    lambda: self._retrieve(user_id, embedding.value, config),
                    user_id=user_id
                )
                if isinstance(search, Ok):
                    results = search.value

        if cancelled():
            return None

        logger.log_pipeline_stage("context_assembly", "success", user_id, {
            "memories": len(results),
            "analysis": analysis is not None
        })
        return build_prompt(results, analysis, message)

    async def _retrieve(self, user_id: str, vector: List[float], config: CompletionConfiguration) -> List[SearchResult]:
        await self.search_engine.backfill_embeddings(user_id)
        return await self.search_engine.search_similar(
            user_id, vector, config.max_memory_results, config.memory_threshold
        )

    async def _relay(self, prompt: str, config: CompletionConfiguration, user_id: str,
                     cancel_event: Optional[asyncio.Event]) -> AsyncIterator[str]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=STREAM_QUEUE_SIZE)
        status = {"value": "success"}

        async def produce():
            try:
                async for delta in self.client.stream(
                    prompt,
                    system_prompt=FINAL_RESPONSE_PROMPT,
                    model=config.model,
                    temperature=config.temperature,
                    max_tokens=config.max_tokens
                ):
                    await queue.put(delta)
            except (StreamTransportFailure, ProviderUnavailable) as e:
                status["value"] = "failed"
                logger.log_pipeline_stage("generation", "failed", user_id, {"error": str(e)})
                await queue.put(ERROR_FRAGMENT.format(message=e.user_message))
            except Exception as e:
                status["value"] = "failed"
                logger.log_pipeline_stage("generation", "failed", user_id, {
                    "error_type": type(e).__name__,
                    "error": str(e)
                })
                await queue.put(ERROR_FRAGMENT.format(message=GENERIC_ERROR_MESSAGE))
            await queue.put(_SENTINEL)

        producer = asyncio.create_task(produce())
        try:
            while True:
                item = await self._next_item(queue, cancel_event)
                if item is _SENTINEL:
                    break
                if item is _CANCELLED:
                    status["value"] = "cancelled"
                    break
                yield item
        finally:
            if not producer.done():
                producer.cancel()
                if status["value"] == "success":
                    status["value"] = "cancelled"
            if status["value"] != "failed":
                logger.log_pipeline_stage("generation", status["value"], user_id)

    @staticmethod
    async def _next_item(queue: asyncio.Queue, cancel_event: Optional[asyncio.Event]):
        if cancel_event is None:
            return await queue.get()
        if cancel_event.is_set():
            return _CANCELLED

        get_task = asyncio.ensure_future(queue.get())
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({get_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (get_task, cancel_task):
                if not task.done():
                    task.cancel()
        if get_task in done:
            return get_task.result()
        return _CANCELLED
