from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse

from linkvault.core.chunking import Chunk, chunk_text, get_chunking_info
from linkvault.core.dispatcher import process_task, run_dispatcher_loop, run_worker
from linkvault.core.embedding_providers import EmbeddingError, EmbeddingProvider, get_provider
from linkvault.core.errors import ValidationError
from linkvault.core.pipeline import ContentPipeline
from linkvault.core.search import (
    SearchConfig,
    get_search_insights,
    get_search_suggestions,
    keyword_search,
    search_with_fallback,
)
from linkvault.core.search_cache import SearchCache
from linkvault.core.settings import Settings
from linkvault.core.storage import get_db, init_db
from linkvault.core.task_queue import MAX_LIST_LIMIT, get_task_store, init_task_store

logger = logging.getLogger(__name__)

app = FastAPI(title="linkvault")


@app.on_event("startup")
async def _startup() -> None:
    s = Settings.from_env()
    logging.basicConfig(level=s.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    db = init_db(s)
    store = init_task_store(
        db.conn, lease_seconds=s.task_lease_seconds, retry_delay_cap=s.retry_delay_cap, lock=db.lock
    )
    provider = get_provider(s)

    app.state.settings = s
    app.state.provider = provider
    app.state.pipeline = ContentPipeline(db, provider)
    app.state.search_cache = SearchCache(ttl=s.search_cache_ttl, max_size=s.search_cache_size)
    app.state.stop_event = asyncio.Event()
    app.state.dispatcher = None

    if s.worker_autostart:
        app.state.dispatcher = asyncio.create_task(
            run_dispatcher_loop(
                store,
                app.state.pipeline,
                poll_interval=s.worker_poll_interval,
                stop_event=app.state.stop_event,
            )
        )
    logger.info(f"linkvault started (env={s.app_env}, embeddings={provider.name}/{provider.model_id})")


@app.on_event("shutdown")
async def _shutdown() -> None:
    app.state.stop_event.set()
    if app.state.dispatcher is not None:
        await app.state.dispatcher
    await app.state.pipeline.close()


def bad_request(message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=400)


async def read_json(request: Request) -> dict[str, Any]:
    """Parse a JSON object body. Raises ValidationError otherwise."""
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be valid JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _int(body: dict[str, Any], key: str, default: int) -> int:
    value = body.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{key} must be a number")
    return int(value)


def _float(body: dict[str, Any], key: str, default: float) -> float:
    value = body.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{key} must be a number")
    return float(value)


# ==================== Tasks ====================


async def _process_in_background(task_id: str) -> None:
    """Run a freshly created task right away unless a worker got it first."""
    store = get_task_store()
    task = store.claim(task_id)
    if task is None:
        return
    if await process_task(task, store, app.state.pipeline):
        app.state.search_cache.invalidate_owner(task.owner_id)


@app.post("/tasks")
async def api_create_task(request: Request, background_tasks: BackgroundTasks):
    """Queue a background task for a link or note.

    Returns the existing task (with a message) when an equivalent task is
    still pending or processing.
    """
    try:
        body = await read_json(request)
        for key in ("userId", "taskType", "entityType", "entityId"):
            if not body.get(key):
                raise ValidationError(f"{key} is required")
        task, created = get_task_store().create(
            owner_id=body["userId"],
            task_type=body["taskType"],
            entity_type=body["entityType"],
            entity_id=body["entityId"],
            payload=body.get("payload") or {},
            priority=_int(body, "priority", 5),
            max_retries=_int(body, "maxRetries", 3),
        )
    except ValidationError as e:
        return bad_request(str(e))

    if not created:
        return {"task": task.to_dict(), "message": "Task already exists"}

    background_tasks.add_task(_process_in_background, task.id)
    return {"task": task.to_dict()}


@app.get("/tasks")
def api_list_tasks(
    userId: str | None = None,
    id: str | None = None,
    entityId: str | None = None,
    entityType: str | None = None,
    status: str | None = None,
):
    """List a user's tasks, newest first. ``status`` may be comma-separated."""
    if not userId:
        return bad_request("userId is required")

    statuses = [s.strip() for s in status.split(",") if s.strip()] if status else None
    tasks = get_task_store().list_tasks(
        owner_id=userId,
        task_id=id,
        entity_id=entityId,
        entity_type=entityType,
        statuses=statuses,
        limit=MAX_LIST_LIMIT,
    )
    return {"tasks": [t.to_dict() for t in tasks]}


@app.post("/tasks/run")
async def api_run_tasks(request: Request):
    """Drain up to ``maxTasks`` pending tasks in this request."""
    try:
        body = await read_json(request) if await request.body() else {}
        max_tasks = _int(body, "maxTasks", 10)
    except ValidationError as e:
        return bad_request(str(e))

    report = await run_worker(get_task_store(), app.state.pipeline, max_tasks=max_tasks, owner_id=body.get("userId"))
    if report.processed:
        app.state.search_cache.clear()
    return report.to_dict()


@app.post("/tasks/sweep")
def api_sweep_tasks():
    """Requeue processing tasks whose lease has expired."""
    return {"released": get_task_store().release_expired_leases()}


@app.post("/tasks/{task_id}/cancel")
def api_cancel_task(task_id: str):
    store = get_task_store()
    task = store.get(task_id)
    if task is None:
        return JSONResponse({"error": "Task not found"}, status_code=404)

    cancelled = store.cancel(task_id)
    if cancelled is None:
        return JSONResponse({"error": f"Task cannot be cancelled (status: {task.status.value})"}, status_code=409)
    return {"task": cancelled.to_dict()}


# ==================== Library ====================


@app.post("/links")
async def api_create_link(request: Request):
    try:
        body = await read_json(request)
        if not body.get("userId") or not body.get("url"):
            raise ValidationError("userId and url are required")
    except ValidationError as e:
        return bad_request(str(e))

    link = get_db().create_link(
        owner_id=body["userId"],
        url=body["url"],
        name=body.get("name") or "",
        description=body.get("description") or "",
        folder_id=body.get("folderId"),
        tag_ids=body.get("tagIds") or [],
    )
    app.state.search_cache.invalidate_owner(body["userId"])
    return {"link": link.to_dict()}


@app.post("/notes")
async def api_create_note(request: Request):
    try:
        body = await read_json(request)
        if not body.get("userId"):
            raise ValidationError("userId is required")
        if not body.get("title") and not body.get("content"):
            raise ValidationError("title or content is required")
    except ValidationError as e:
        return bad_request(str(e))

    note = get_db().create_note(
        owner_id=body["userId"],
        title=body.get("title") or "",
        content=body.get("content") or "",
        folder_id=body.get("folderId"),
        tag_ids=body.get("tagIds") or [],
    )
    app.state.search_cache.invalidate_owner(body["userId"])
    return {"note": note.to_dict()}


# ==================== Search ====================


@app.post("/search/semantic")
async def api_semantic_search(request: Request):
    """Vector search over stored link, note and chunk embeddings.

    Only embeddings produced by the same model as the query embedding are
    compared.
    """
    try:
        body = await read_json(request)
        query = (body.get("query") or "").strip()
        if not query or not body.get("userId"):
            raise ValidationError("query and userId are required")
        limit = max(1, min(_int(body, "limit", 20), MAX_LIST_LIMIT))
        threshold = _float(body, "threshold", 0.5)
    except ValidationError as e:
        return bad_request(str(e))

    provider: EmbeddingProvider = app.state.provider
    try:
        result = await provider.embed_single(query)
    except EmbeddingError as e:
        logger.error(f"Query embedding failed: {e}")
        return JSONResponse({"error": f"Embedding failed: {e}"}, status_code=502)
    if result is None:
        return {"results": []}

    results = get_db().semantic_search(
        owner_id=body["userId"],
        query_embedding=result.embedding,
        model=result.model,
        limit=limit,
        threshold=threshold,
    )
    return {"results": results}


@app.post("/search")
async def api_search(request: Request):
    """Hybrid (or keyword-only) search over a user's links and notes."""
    try:
        body = await read_json(request)
        query = (body.get("query") or "").strip()
        owner_id = body.get("userId")
        if not query or not owner_id:
            raise ValidationError("query and userId are required")
        mode = body.get("mode") or "hybrid"
        if mode not in ("hybrid", "keyword"):
            raise ValidationError("mode must be 'hybrid' or 'keyword'")
        limit = max(1, min(_int(body, "limit", 20), MAX_LIST_LIMIT))
    except ValidationError as e:
        return bad_request(str(e))

    cache: SearchCache = app.state.search_cache
    key = cache.make_key(owner_id, query, mode, limit=limit)
    cached = cache.get(key)
    if cached is not None:
        return {**cached, "cached": True}

    db = get_db()
    links = db.list_links(owner_id)
    notes = db.list_notes(owner_id)
    folders = db.list_folders(owner_id)
    tags = db.list_tags(owner_id)
    config = SearchConfig(top_k=limit)

    if mode == "keyword":
        results = keyword_search(query, links, notes, folders, tags, config=config)
    else:
        results = await search_with_fallback(
            query, links, notes, folders, tags, provider=app.state.provider, config=config
        )

    response = {
        "results": [r.to_dict() for r in results],
        "insights": get_search_insights(results),
        "mode": mode,
    }
    cache.set(key, response)
    return {**response, "cached": False}


@app.get("/search/suggestions")
def api_search_suggestions(userId: str | None = None, q: str = ""):
    if not userId:
        return bad_request("userId is required")

    db = get_db()
    suggestions = get_search_suggestions(
        q,
        db.list_links(userId, with_chunks=False),
        db.list_notes(userId, with_chunks=False),
        db.list_folders(userId),
        db.list_tags(userId),
    )
    return {"suggestions": suggestions}


# ==================== Embeddings ====================


@app.post("/embeddings")
async def api_embeddings(request: Request):
    """Embed ad-hoc texts, optionally chunking them first.

    Each returned embedding carries its chunk index and the index of the
    input text it came from.
    """
    try:
        body = await read_json(request)
        texts = body.get("texts")
        if not isinstance(texts, list) or not texts or not all(isinstance(t, str) for t in texts):
            raise ValidationError("texts must be a non-empty list of strings")
        chunked = bool(body.get("chunk", False))
        chunk_size = _int(body, "chunkSize", 500)
        chunk_overlap = _int(body, "chunkOverlap", 50)
        if not 50 <= chunk_size <= 8000:
            raise ValidationError("chunkSize must be between 50 and 8000")
        if chunked and not 0 <= chunk_overlap < chunk_size:
            raise ValidationError("chunkOverlap must be >= 0 and smaller than chunkSize")
    except ValidationError as e:
        return bad_request(str(e))

    pieces: list[tuple[int, Chunk]] = []
    for parent_index, text in enumerate(texts):
        if not text.strip():
            continue
        chunks = chunk_text(text, chunk_size=chunk_size, chunk_overlap=chunk_overlap) if chunked else []
        if not chunks:
            chunks = [Chunk(id="", text=text, index=0, start_char=0, end_char=len(text))]
        pieces.extend((parent_index, c) for c in chunks)

    if not pieces:
        return bad_request("texts must contain at least one non-empty string")

    provider: EmbeddingProvider = app.state.provider
    try:
        results = await provider.embed([c.text for _, c in pieces])
    except EmbeddingError as e:
        logger.error(f"Embedding request failed: {e}")
        return JSONResponse({"error": f"Embedding failed: {e}"}, status_code=502)

    embeddings = [
        {
            "text": chunk.text,
            "embedding": result.embedding,
            "chunkIndex": chunk.index,
            "parentIndex": parent_index,
        }
        for (parent_index, chunk), result in zip(pieces, results)
    ]
    return {
        "embeddings": embeddings,
        "model": results[0].model if results else provider.model_id,
        "dimensions": len(results[0].embedding) if results else provider.dimensions,
        "chunked": chunked,
        "totalChunks": len(embeddings),
    }


# ==================== Health ====================


@app.get("/health")
def api_health():
    provider: EmbeddingProvider = app.state.provider
    return {
        "status": "ok",
        "provider": provider.name,
        "model": provider.model_id,
        "dimensions": provider.dimensions,
        "chunking": get_chunking_info(),
        "stats": get_db().get_stats(),
        "search_cache": app.state.search_cache.stats(),
    }
