"""
HTTP control server for the auto-tagging pipeline.

Exposes health, metrics and every queue/review operation as JSON endpoints
for a UI or script to drive.
"""

import asyncio
from datetime import datetime, timezone

import psutil
from aiohttp import web
from pydantic import ValidationError

from . import __version__
from .logging import get_logger
from .models import ApprovalEdits, HealthStatus
from .service import AutoTaggerService, QueueNotInitializedError


def _dump(model) -> dict:
    return model.model_dump(mode="json")


@web.middleware
async def error_middleware(request, handler):
    try:
        return await handler(request)
    except QueueNotInitializedError as e:
        return web.json_response({"error": str(e)}, status=503)
    except ValidationError as e:
        return web.json_response({"error": "Invalid request body", "details": e.errors(include_url=False)}, status=400)


class ControlServer:
    """aiohttp application wrapping an AutoTaggerService."""

    def __init__(self, service: AutoTaggerService):
        self.service = service
        self.logger = get_logger("api_server")
        self.app = web.Application(middlewares=[error_middleware])
        self.setup_routes()

    def setup_routes(self):
        """Setup HTTP routes."""
        router = self.app.router
        router.add_get("/", self.root_handler)
        router.add_get("/health", self.health_handler)
        router.add_get("/metrics", self.metrics_handler)
        router.add_get("/models", self.models_handler)

        router.add_get("/queue/status", self.status_handler)
        router.add_get("/queue/untagged-count", self.untagged_count_handler)
        router.add_post("/queue/untagged", self.queue_untagged_handler)
        router.add_post("/queue/specific", self.queue_specific_handler)
        router.add_post("/queue/all", self.queue_all_handler)
        router.add_post("/queue/retry-failed", self.retry_failed_handler)
        router.add_post("/queue/clear-failed", self.clear_failed_handler)

        router.add_post("/run/start", self.start_handler)
        router.add_post("/run/pause", self.pause_handler)
        router.add_post("/run/resume", self.resume_handler)
        router.add_post("/run/stop", self.stop_handler)

        router.add_get("/review", self.review_list_handler)
        router.add_post("/review/bulk-approve", self.bulk_approve_handler)
        router.add_post("/review/bulk-reject", self.bulk_reject_handler)
        router.add_post("/review/{media_id}/approve", self.approve_handler)
        router.add_post("/review/{media_id}/approve-edited", self.approve_edited_handler)
        router.add_post("/review/{media_id}/reject", self.reject_handler)

        router.add_get("/stats", self.stats_handler)
        router.add_post("/tags/cleanup", self.cleanup_handler)
        router.add_post("/vision/configure", self.configure_vision_handler)

    async def _json_body(self, request) -> dict:
        if not request.body_exists:
            return {}
        try:
            body = await request.json()
        except ValueError:
            raise web.HTTPBadRequest(text="Request body must be JSON")
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(text="Request body must be a JSON object")
        return body

    async def root_handler(self, request):
        """Root endpoint with service information."""
        info = {
            "service": "Vault Auto-Tagger",
            "version": __version__,
            "endpoints": sorted({route.resource.canonical for route in self.app.router.routes()}),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return web.json_response(info)

    async def health_handler(self, request):
        """Health check endpoint."""
        healthy = self.service.initialized
        status = HealthStatus(
            status="healthy" if healthy else "unhealthy",
            version=__version__,
            tier1_available=self.service.tier1_available,
            tier2_configured=bool(self.service.vision and self.service.vision.is_enabled()),
            metrics=_dump(self.service.get_status()) if healthy else {},
        )
        return web.json_response(_dump(status), status=200 if healthy else 503)

    async def metrics_handler(self, request):
        """Pipeline metrics plus host system metrics."""
        metrics = self.service.get_metrics()
        metrics.update({
            "cpu_percent": psutil.cpu_percent(),
            "memory_percent": psutil.virtual_memory().percent,
            "disk_percent": psutil.disk_usage("/").percent,
        })
        return web.json_response(metrics)

    async def models_handler(self, request):
        return web.json_response(self.service.check_models())

    async def status_handler(self, request):
        return web.json_response(_dump(self.service.get_status()))

    async def untagged_count_handler(self, request):
        return web.json_response({"count": self.service.untagged_count()})

    async def queue_untagged_handler(self, request):
        return web.json_response({"queued": self.service.queue_untagged()})

    async def queue_specific_handler(self, request):
        body = await self._json_body(request)
        media_ids = body.get("media_ids")
        if not isinstance(media_ids, list) or not all(isinstance(m, str) for m in media_ids):
            raise web.HTTPBadRequest(text="media_ids must be a list of strings")
        return web.json_response({"queued": self.service.queue_specific(media_ids)})

    async def queue_all_handler(self, request):
        return web.json_response({"queued": self.service.queue_all()})

    async def retry_failed_handler(self, request):
        return web.json_response({"retried": self.service.retry_failed()})

    async def clear_failed_handler(self, request):
        return web.json_response({"cleared": self.service.clear_failed()})

    async def start_handler(self, request):
        body = await self._json_body(request)
        result = await self.service.start(
            enable_tier2=body.get("enable_tier2"),
            concurrency=int(body.get("concurrency", 1)),
        )
        return web.json_response(_dump(result), status=200 if result.success else 409)

    async def pause_handler(self, request):
        return web.json_response(_dump(self.service.pause()))

    async def resume_handler(self, request):
        return web.json_response(_dump(self.service.resume()))

    async def stop_handler(self, request):
        return web.json_response(_dump(self.service.stop()))

    async def review_list_handler(self, request):
        try:
            limit = int(request.query["limit"]) if "limit" in request.query else None
            offset = int(request.query.get("offset", 0))
        except ValueError:
            raise web.HTTPBadRequest(text="limit and offset must be integers")
        return web.json_response(_dump(self.service.get_review_list(limit=limit, offset=offset)))

    async def approve_handler(self, request):
        result = self.service.approve(request.match_info["media_id"])
        return web.json_response(_dump(result), status=200 if result.success else 404)

    async def approve_edited_handler(self, request):
        edits = ApprovalEdits.model_validate(await self._json_body(request))
        result = self.service.approve_edited(request.match_info["media_id"], edits)
        return web.json_response(_dump(result), status=200 if result.success else 404)

    async def reject_handler(self, request):
        result = self.service.reject(request.match_info["media_id"])
        return web.json_response(_dump(result), status=200 if result.success else 404)

    async def bulk_approve_handler(self, request):
        return web.json_response({"approved": self.service.bulk_approve()})

    async def bulk_reject_handler(self, request):
        return web.json_response({"rejected": self.service.bulk_reject()})

    async def stats_handler(self, request):
        return web.json_response(_dump(self.service.get_stats()))

    async def cleanup_handler(self, request):
        return web.json_response({"removed": self.service.cleanup_tags()})

    async def configure_vision_handler(self, request):
        body = await self._json_body(request)
        api_key = body.get("api_key")
        if not isinstance(api_key, str):
            raise web.HTTPBadRequest(text="api_key must be a string")
        self.service.configure_vision(api_key)
        return web.json_response({"enabled": self.service.vision.is_enabled()})

    async def start(self, host: str, port: int):
        """Start the control server."""
        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        self.logger.info(f"🌐 Control server started on {host}:{port}")
        return runner

    async def stop(self, runner):
        """Stop the control server."""
        await runner.cleanup()
        self.logger.info("Control server stopped")


async def run_control_server(service: AutoTaggerService, host: str, port: int):
    """Run the control server until cancelled."""
    server = ControlServer(service)
    runner = await server.start(host, port)
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await server.stop(runner)
