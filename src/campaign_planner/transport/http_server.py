"""Starlette HTTP surface over the record repositories."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from campaign_planner import __version__
from campaign_planner.app import AppContext, build_app_context
from campaign_planner.config import load_settings
from campaign_planner.persistence.repository import RecordRepository
from campaign_planner.recovery.service import backup_filename
from campaign_planner.utils.serialization import dumps

logger = logging.getLogger(__name__)

_MAX_BODY_BYTES = 5 * 1024 * 1024


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message})


def _advisory_dict(advisory: Any) -> dict[str, Any]:
    return {
        "level": advisory.level,
        "message": advisory.message,
        "source": advisory.source,
        "persistent": advisory.persistent,
        "action": advisory.action,
        "createdAt": advisory.created_at.isoformat() if advisory.created_at else None,
    }


def create_http_app(context: AppContext | None = None) -> Starlette:
    """Create the HTTP application; the context is built from settings when omitted."""
    ctx = context or build_app_context(load_settings())

    def _repository(request: Request) -> RecordRepository | None:
        return ctx.repository(request.path_params["collection"])

    def _unknown(request: Request) -> JSONResponse:
        return _error(404, "unknown_collection", f"No collection named {request.path_params['collection']!r}")

    async def health_handler(request: Request) -> Response:
        return JSONResponse({"status": "healthy", "version": __version__, "started": ctx.started})

    async def get_records(request: Request) -> Response:
        repository = _repository(request)
        if repository is None:
            return _unknown(request)
        return JSONResponse(
            {
                "records": repository.records,
                "status": repository.status.to_dict(),
                "dirty": repository.is_dirty,
            }
        )

    async def put_records(request: Request) -> Response:
        repository = _repository(request)
        if repository is None:
            return _unknown(request)
        body = await request.body()
        if len(body) > _MAX_BODY_BYTES:
            return _error(413, "payload_too_large", "Request body is too large")
        try:
            payload = json.loads(body)
        except ValueError:
            return _error(400, "invalid_json", "Request body must be JSON")
        records = payload.get("records") if isinstance(payload, dict) else payload
        if not isinstance(records, list):
            return _error(400, "invalid_records", "Expected a list of records")

        repaired = ctx.recovery.repair(records, repository.schema)
        repository.mutate(repaired)
        return JSONResponse(status_code=202, content={"records": repaired, "dirty": repository.is_dirty})

    async def save_records(request: Request) -> Response:
        repository = _repository(request)
        if repository is None:
            return _unknown(request)
        report = await repository.force_save()
        return JSONResponse(status_code=200 if report.success else 503, content=report.to_dict())

    async def record_status(request: Request) -> Response:
        repository = _repository(request)
        if repository is None:
            return _unknown(request)
        monitor = ctx.monitors.get(request.path_params["collection"])
        report = monitor.last_report if monitor else None
        return JSONResponse(
            {
                "status": repository.status.to_dict(),
                "dirty": repository.is_dirty,
                "sync": report.to_dict() if report else None,
                "monitoring": bool(monitor and monitor.running),
            }
        )

    async def download_backup(request: Request) -> Response:
        repository = _repository(request)
        if repository is None:
            return _unknown(request)
        backup = ctx.recovery.build_backup(repository.records)
        return Response(
            dumps(backup, pretty=True),
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{backup_filename()}"'},
        )

    async def export_backup(request: Request) -> Response:
        repository = _repository(request)
        if repository is None:
            return _unknown(request)
        path = ctx.recovery.export_backup(repository.records)
        if path is None:
            return _error(500, "backup_failed", "Backup file could not be written")
        return JSONResponse({"path": str(path), "records": len(repository.records)})

    async def storage_usage(request: Request) -> Response:
        usage = ctx.guard.get_usage()
        return JSONResponse(
            {
                "bytesUsed": usage.bytes_used,
                "capacityBytes": usage.capacity_bytes,
                "percentOfCap": usage.percent_of_cap,
                "perKey": usage.per_key,
                "recommendations": ctx.guard.recommendations(usage),
            }
        )

    async def storage_enforce(request: Request) -> Response:
        reclaimed = ctx.guard.enforce()
        return JSONResponse(
            {"reclaimed": reclaimed, "percentOfCap": ctx.guard.get_usage().percent_of_cap}
        )

    async def reset_all(request: Request) -> Response:
        outcomes = await ctx.recovery.reset_all()
        return JSONResponse(
            {
                "success": all(outcome.success for outcome in outcomes),
                "layers": [
                    {"layer": o.layer, "success": o.success, "error": o.error} for o in outcomes
                ],
            }
        )

    async def advisories(request: Request) -> Response:
        return JSONResponse({"advisories": [_advisory_dict(a) for a in ctx.advisories.history]})

    routes = [
        Route("/health", endpoint=health_handler, methods=["GET"]),
        Route("/api/storage/usage", endpoint=storage_usage, methods=["GET"]),
        Route("/api/storage/enforce", endpoint=storage_enforce, methods=["POST"]),
        Route("/api/reset", endpoint=reset_all, methods=["POST"]),
        Route("/api/advisories", endpoint=advisories, methods=["GET"]),
        Route("/api/{collection}", endpoint=get_records, methods=["GET"]),
        Route("/api/{collection}", endpoint=put_records, methods=["PUT"]),
        Route("/api/{collection}/save", endpoint=save_records, methods=["POST"]),
        Route("/api/{collection}/status", endpoint=record_status, methods=["GET"]),
        Route("/api/{collection}/backup", endpoint=download_backup, methods=["GET"]),
        Route("/api/{collection}/backup", endpoint=export_backup, methods=["POST"]),
    ]

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info("Starting campaign planner HTTP server...")
        await ctx.startup()
        try:
            yield
        finally:
            logger.info("Stopping campaign planner HTTP server...")
            await ctx.shutdown()

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.context = ctx
    return app
