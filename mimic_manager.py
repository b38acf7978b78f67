# mimic_manager.py
"""
Process-wide registry of mock HTTP servers ("mimics").

A step may declare ``mimic: [{application: payments, port: 9100}]``. The
application's ``mimic.py`` then starts one or more servers through the
manager::

    async def start(manager, config):
        async def handler(request):
            if request["path"] == "/charge":
                return 201, '{"id": "{{ uuid }}", "amount": {{ amount }}}'
            return manager.static_file(config, "default.json", fallback="{}")
        return await manager.start(config, config.get("port", 9100), handler)

Handlers receive ``{method, path, query, headers, body}`` and return a body
or a ``(status, body)`` pair. The body is resolved with the request body as
template context and sent as JSON.
"""

import asyncio
import inspect
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from aiohttp import web

from flow_logging import get_logger
from flow_templates import TemplateResolver

logger = get_logger("Mimic")

MimicHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


class MimicServer:
    """Handle of a running mimic listener."""

    def __init__(self, application: str, port: int, runner: web.AppRunner):
        self.application = application
        self.port = port
        self.runner = runner

    @property
    def id(self) -> str:
        return f"{self.application}:{self.port}"

    def as_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "application": self.application, "port": self.port}

    def __repr__(self):
        return f"MimicServer(id={self.id!r})"


async def _read_body(request: web.Request) -> Any:
    if not request.can_read_body:
        return None
    if request.content_type == "application/json":
        try:
            return await request.json()
        except json.JSONDecodeError:
            return await request.text()
    if request.content_type in ("application/x-www-form-urlencoded", "multipart/form-data"):
        return dict(await request.post())
    return await request.text()


class MimicManager:
    def __init__(self, resolver: Optional[TemplateResolver] = None, host: str = "127.0.0.1"):
        self.resolver = resolver or TemplateResolver()
        self.host = host
        self._servers: Dict[Tuple[str, int], MimicServer] = {}
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    def _get_lock(self) -> asyncio.Lock:
        # created inside the running loop; a new loop gets a new lock
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    @property
    def servers(self) -> List[MimicServer]:
        return list(self._servers.values())

    def get(self, server_id: str) -> Optional[MimicServer]:
        return next((s for s in self._servers.values() if s.id == server_id), None)

    async def start(self, config: Dict[str, Any], port: int, handler: MimicHandler) -> MimicServer:
        """Start a listener for ``config['application']`` on ``port`` unless one already runs."""
        application = config["application"]
        async with self._get_lock():
            existing = self._servers.get((application, port))
            if existing:
                logger.debug(f"Mimic {existing.id} already running")
                return existing

            app = web.Application()
            app.router.add_route("*", "/{tail:.*}", self._make_route(config, handler))
            runner = web.AppRunner(app)
            await runner.setup()
            site = web.TCPSite(runner, self.host, port)
            try:
                await site.start()
            except OSError:
                await runner.cleanup()
                raise
            bound_port = runner.addresses[0][1] if port == 0 else port
            server = MimicServer(application, bound_port, runner)
            self._servers[(application, bound_port)] = server
            logger.info(f"Mimic {server.id} listening on {self.host}:{bound_port}")
            return server

    async def stop(self, server_id: Union[str, MimicServer]):
        if isinstance(server_id, MimicServer):
            server_id = server_id.id
        async with self._get_lock():
            server = self.get(server_id)
            if server is None:
                return
            del self._servers[(server.application, server.port)]
        await server.runner.cleanup()
        logger.info(f"Mimic {server_id} stopped")

    async def stop_all(self):
        for server in self.servers:
            await self.stop(server.id)

    def static_file(self, config: Dict[str, Any], name: str, fallback: Optional[str] = None) -> str:
        """Return the content of a canned file from the application's ``static/`` folder."""
        static_dir = Path(config.get("static_dir") or Path(config["application"]) / "static")
        path = static_dir / name
        exists = path.is_file()
        reporter = config.get("reporter")
        if reporter is not None:
            reporter.mimic_file(config["application"], str(path), exists)
        content = path.read_text(encoding="utf-8") if exists else None
        if not content and fallback:
            content = fallback
        if not content:
            raise FileNotFoundError(f"File {path} does not exist")
        return content

    def _make_route(self, config: Dict[str, Any], handler: MimicHandler):
        application = config["application"]

        async def route(request: web.Request) -> web.Response:
            reporter = config.get("reporter")
            body = await _read_body(request)
            incoming = {
                "method": request.method,
                "path": request.path,
                "query": dict(request.query),
                "headers": dict(request.headers),
                "body": body,
            }
            if reporter is not None:
                reporter.mimic_request(application, request.path_qs, incoming)

            result = handler(incoming)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, web.StreamResponse):
                return result

            status = 200
            if isinstance(result, tuple) and len(result) == 2 and isinstance(result[0], int):
                status, result = result

            context = body if isinstance(body, dict) else {"body": body}
            response = self.resolver.resolve_text(result, context) if result is not None else None
            if reporter is not None:
                reporter.mimic_response(application, request.path_qs)
                reporter.mimic_response_body(response)
            return web.json_response(response, status=status, dumps=lambda d: json.dumps(d, default=str))

        return route


_default_manager: Optional[MimicManager] = None


def get_mimic_manager() -> MimicManager:
    """The manager shared by every orchestrator in this process."""
    global _default_manager
    if _default_manager is None:
        _default_manager = MimicManager()
    return _default_manager
