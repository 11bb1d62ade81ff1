"""
server.py — HTTP boundary for the identification/matching pipeline.

Runs as an aiohttp web server in the same asyncio event loop as the
embedding backfill job.

Endpoints:
  POST /identify          raw image body + Content-Type → descriptor + confidence
                          (?k=N also runs the catalog search on the descriptor)
  POST /search            {"query": str, "k": int}      → ranked candidates
  POST /match             {"text_a": str, "text_b": str} → matched + confidence
  GET  /products/{code}   exact lookup, "did you mean" suggestions on a miss
  GET  /health            index + inference gate counters

Admin (only when ADMIN_TOKEN is set; "Authorization: Bearer <token>"):
  PUT    /admin/products/{code}     catalog ingestion, refreshes the live index
  GET    /admin/segments            brand → segment table
  PUT    /admin/segments/{brand}    {"segment": "premium" | "standard" | "economy"}
  DELETE /admin/segments/{brand}
  PUT    /admin/acronyms/{acronym}  {"expansion": str, "active": bool}
  PUT    /admin/keys/{name}         {"value": str}; used from the next restart
  DELETE /admin/keys/{name}

Pipeline errors are mapped to status codes here and nowhere else.

Nginx minimal config:
  server {
      listen 80;
      server_name catalog.yourdomain.com;
      client_max_body_size 12m;
      location / {
          proxy_pass http://127.0.0.1:8080;
          proxy_set_header Host $host;
          proxy_set_header X-Real-IP $remote_addr;
      }
  }
"""
from __future__ import annotations

import hmac
import json
import logging

from aiohttp import web

import config
import database as db
import key_store
from catalog_index import CatalogEntry, Segment
from errors import (
    InvalidInput,
    InvalidMediaType,
    NotFound,
    Overloaded,
    PayloadTooLarge,
    PipelineError,
    Timeout,
    UpstreamError,
)
from pipeline import Pipeline

logger = logging.getLogger(__name__)

PIPELINE_KEY = web.AppKey("pipeline", Pipeline)
ADMIN_TOKEN_KEY = web.AppKey("admin_token", str)

# Most specific first: PayloadTooLarge / InvalidMediaType subclass InvalidInput
_STATUS_BY_ERROR: list[tuple[type[PipelineError], int]] = [
    (PayloadTooLarge,  413),
    (InvalidMediaType, 415),
    (InvalidInput,     400),
    (NotFound,         404),
    (Overloaded,       503),
    (UpstreamError,    503),
    (Timeout,          504),
]

RETRY_AFTER_SECS = 5


def status_for(exc: PipelineError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 500


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except PipelineError as exc:
        status = status_for(exc)
        headers = {"Retry-After": str(RETRY_AFTER_SECS)} if isinstance(exc, Overloaded) else None
        if status >= 500:
            logger.warning("%s %s → %d %s: %s", request.method, request.path, status, exc.kind, exc)
        return web.json_response(
            {"error": exc.kind, "message": str(exc)}, status=status, headers=headers,
        )


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidInput(f"Request body is not valid JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise InvalidInput("Request body must be a JSON object")
    return body


def _int_param(value, name: str) -> int:
    if isinstance(value, bool):
        raise InvalidInput(f"'{name}' must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"'{name}' must be an integer") from exc


# ── Request handlers ───────────────────────────────────────────────────────────

async def handle_identify(request: web.Request) -> web.Response:
    pipeline = request.app[PIPELINE_KEY]
    image_bytes = await request.read()
    media_type = request.headers.get("Content-Type", "")

    if "k" in request.query:
        k = _int_param(request.query["k"], "k")
        descriptor, candidates = await pipeline.search_from_image(image_bytes, media_type, k)
        data = descriptor.as_dict()
        data["candidates"] = [c.as_dict() for c in candidates]
        return web.json_response(data)

    descriptor = await pipeline.identify_from_image(image_bytes, media_type)
    return web.json_response(descriptor.as_dict())


async def handle_search(request: web.Request) -> web.Response:
    pipeline = request.app[PIPELINE_KEY]
    body = await _json_body(request)
    query = body.get("query")
    if not isinstance(query, str):
        raise InvalidInput("'query' must be a string")
    k = _int_param(body.get("k", config.MAX_SUGGESTIONS), "k")

    candidates = await pipeline.find_candidates(query, k)
    return web.json_response({
        "query": query,
        "count": len(candidates),
        "candidates": [c.as_dict() for c in candidates],
    })


async def handle_match(request: web.Request) -> web.Response:
    pipeline = request.app[PIPELINE_KEY]
    body = await _json_body(request)
    text_a, text_b = body.get("text_a"), body.get("text_b")
    if not isinstance(text_a, str) or not isinstance(text_b, str):
        raise InvalidInput("'text_a' and 'text_b' must be strings")

    result = await pipeline.is_match(text_a, text_b)
    return web.json_response(result.as_dict())


async def handle_product(request: web.Request) -> web.Response:
    pipeline = request.app[PIPELINE_KEY]
    result = await pipeline.lookup_code(request.match_info["code"])
    return web.json_response(result.as_dict())


async def handle_health(request: web.Request) -> web.Response:
    """Health check — returns 200 with index, gate and request-log counters."""
    pipeline = request.app[PIPELINE_KEY]
    data = {"status": "ok", **pipeline.health()}
    try:
        data["requests"] = await db.get_request_stats()
    except Exception as exc:
        logger.warning("Health: request log unavailable: %s", exc)
        data["requests"] = None
    return web.json_response(data)


# ── Admin handlers ─────────────────────────────────────────────────────────────
# Catalog ingestion, brand segments, acronyms and provider keys. Mounted only
# when ADMIN_TOKEN is set; every request must carry it as a Bearer token.

def _require_admin(request: web.Request) -> None:
    expected = request.app[ADMIN_TOKEN_KEY]
    supplied = request.headers.get("Authorization", "")
    if not hmac.compare_digest(supplied.encode(), f"Bearer {expected}".encode()):
        logger.warning("Rejected admin request %s %s from %s", request.method, request.path, request.remote)
        raise web.HTTPUnauthorized(
            text=json.dumps({"error": "unauthorized", "message": "Admin token required"}),
            content_type="application/json",
        )


def _entry_from_body(code: str, body: dict) -> CatalogEntry:
    description = body.get("description")
    if not isinstance(description, str) or not description.strip():
        raise InvalidInput("'description' must be a non-empty string")
    cost_list = body.get("cost_list")
    if cost_list is not None and (isinstance(cost_list, bool) or not isinstance(cost_list, (int, float))):
        raise InvalidInput("'cost_list' must be a number")
    try:
        segment = Segment(body["segment"]) if body.get("segment") else None
    except ValueError as exc:
        raise InvalidInput(f"Unknown segment '{body['segment']}'") from exc
    return CatalogEntry(
        code=code,
        description=description.strip(),
        brand=str(body.get("brand") or ""),
        manufacturer_code=str(body.get("manufacturer_code") or ""),
        stock_flag=bool(body.get("stock_flag", False)),
        cost_list=float(cost_list) if cost_list is not None else None,
        segment=segment,
    )


async def handle_admin_put_product(request: web.Request) -> web.Response:
    """Insert or update a catalog row, then refresh it in the live index."""
    _require_admin(request)
    pipeline = request.app[PIPELINE_KEY]
    code = request.match_info["code"].strip()
    entry = _entry_from_body(code, await _json_body(request))

    await db.upsert_entry(entry)
    stored = await db.get_entry(code)
    pipeline.index.upsert(stored)
    logger.info("Catalog entry %s upserted (embedded=%s)", code, stored.has_embedding)
    return web.json_response({**stored.as_dict(), "embedded": stored.has_embedding})


async def handle_admin_list_segments(request: web.Request) -> web.Response:
    _require_admin(request)
    segments = await db.get_all_segments()
    return web.json_response({brand: seg.value for brand, seg in segments.items()})


async def handle_admin_put_segment(request: web.Request) -> web.Response:
    _require_admin(request)
    body = await _json_body(request)
    brand = request.match_info["brand"]
    try:
        segment = Segment(body.get("segment"))
        await db.set_segment(brand, segment)
    except ValueError as exc:
        raise InvalidInput(str(exc)) from exc
    return web.json_response({"brand": brand.strip().upper(), "segment": segment.value})


async def handle_admin_delete_segment(request: web.Request) -> web.Response:
    _require_admin(request)
    brand = request.match_info["brand"]
    if not await db.delete_segment(brand):
        raise NotFound(f"No segment stored for brand '{brand}'")
    return web.json_response({"deleted": brand.strip().upper()})


async def handle_admin_put_acronym(request: web.Request) -> web.Response:
    _require_admin(request)
    body = await _json_body(request)
    acronym = request.match_info["acronym"]
    expansion = body.get("expansion")
    if not isinstance(expansion, str):
        raise InvalidInput("'expansion' must be a string")
    active = body.get("active", True)
    if not isinstance(active, bool):
        raise InvalidInput("'active' must be a boolean")
    try:
        await db.set_acronym(acronym, expansion, active=active)
    except ValueError as exc:
        raise InvalidInput(str(exc)) from exc
    return web.json_response({"acronym": acronym.strip().upper(), "expansion": expansion.strip(), "active": active})


def _key_name(request: web.Request) -> str:
    key_name = request.match_info["name"].lower()
    if key_name not in key_store.KNOWN_KEYS:
        raise InvalidInput(f"Unknown key '{key_name}'. Available: {', '.join(key_store.KNOWN_KEYS)}")
    return key_name


async def handle_admin_put_key(request: web.Request) -> web.Response:
    """Store a provider key in the DB. Providers pick it up on the next restart."""
    _require_admin(request)
    key_name = _key_name(request)
    value = (await _json_body(request)).get("value")
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput("'value' must be a non-empty string")
    await key_store.set(key_name, value.strip())
    logger.info("API key %s updated (%s)", key_name, key_store.mask(value.strip()))
    return web.json_response({"key": key_name, "value": key_store.mask(value.strip())})


async def handle_admin_delete_key(request: web.Request) -> web.Response:
    _require_admin(request)
    key_name = _key_name(request)
    await key_store.delete(key_name)
    logger.info("API key %s removed from DB", key_name)
    return web.json_response({"key": key_name, "value": key_store.mask(await key_store.get(key_name))})


# ── App factory ────────────────────────────────────────────────────────────────

def build_web_app(pipeline: Pipeline, admin_token: str = "") -> web.Application:
    # Body ceiling sits just above the image limit so the extractor, not
    # aiohttp, produces the PayloadTooLarge answer.
    app = web.Application(
        middlewares=[error_middleware],
        client_max_size=config.MAX_IMAGE_BYTES + 1024 * 1024,
    )
    app[PIPELINE_KEY] = pipeline
    app.router.add_post("/identify",        handle_identify)
    app.router.add_post("/search",          handle_search)
    app.router.add_post("/match",           handle_match)
    app.router.add_get("/products/{code}",  handle_product)
    app.router.add_get("/health",           handle_health)

    if admin_token:
        app[ADMIN_TOKEN_KEY] = admin_token
        app.router.add_put("/admin/products/{code}",     handle_admin_put_product)
        app.router.add_get("/admin/segments",            handle_admin_list_segments)
        app.router.add_put("/admin/segments/{brand}",    handle_admin_put_segment)
        app.router.add_delete("/admin/segments/{brand}", handle_admin_delete_segment)
        app.router.add_put("/admin/acronyms/{acronym}",  handle_admin_put_acronym)
        app.router.add_put("/admin/keys/{name}",         handle_admin_put_key)
        app.router.add_delete("/admin/keys/{name}",      handle_admin_delete_key)
    else:
        logger.info("ADMIN_TOKEN not set; /admin routes disabled")
    return app


async def start_server(pipeline: Pipeline) -> web.AppRunner:
    """Start the web server. Returns runner so caller can shut it down cleanly."""
    app    = build_web_app(pipeline, admin_token=config.ADMIN_TOKEN)
    runner = web.AppRunner(app, access_log=logger)
    await runner.setup()
    site = web.TCPSite(runner, config.SERVER_HOST, config.SERVER_PORT)
    await site.start()
    logger.info("🔎 Catalog pipeline listening on %s:%d", config.SERVER_HOST, config.SERVER_PORT)
    return runner
