"""
监控 HTTP 接口：以 JSON 暴露进程健康状态与当前话题注册信息。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import orjson
from aiohttp import web as aiohttp_web

from .engine import BusEngine, get_engine

logger = logging.getLogger("calbus.monitor")


@dataclass
class MonitorOptions:
    host: str = "127.0.0.1"
    port: int = 8090
    path: str = "/calbus"


class MonitorServer:
    """
    基于 aiohttp 的只读监控服务。

    - GET {path}/health: 进程状态，总线不可用时返回 503
    - GET {path}/topics: 所有已绑定话题的发布者与订阅者
    """

    def __init__(self, engine: BusEngine | None = None, options: MonitorOptions | None = None) -> None:
        self._engine = engine or get_engine()
        self.options = options or MonitorOptions()
        self._runner: aiohttp_web.AppRunner | None = None
        self._site: aiohttp_web.BaseSite | None = None

    def build_app(self, app: aiohttp_web.Application | None = None) -> aiohttp_web.Application:
        app = app or aiohttp_web.Application()
        base = self.options.path.rstrip("/")
        app.add_routes(
            [
                aiohttp_web.get(f"{base}/health", self._handle_health),
                aiohttp_web.get(f"{base}/topics", self._handle_topics),
            ]
        )
        return app

    async def start(self) -> None:
        if self._runner is not None:
            return
        self._runner = aiohttp_web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = aiohttp_web.TCPSite(self._runner, self.options.host, self.options.port)
        await self._site.start()
        logger.info(f"监控服务已启动: http://{self.options.host}:{self.options.port}{self.options.path}")

    async def stop(self) -> None:
        if self._site:
            await self._site.stop()
            self._site = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _handle_health(self, request: aiohttp_web.Request) -> aiohttp_web.Response:
        snapshot = self._engine.snapshot()
        snapshot.pop("topics", None)
        return _json_response(snapshot, status=200 if snapshot["ok"] else 503)

    async def _handle_topics(self, request: aiohttp_web.Request) -> aiohttp_web.Response:
        topics = self._engine.snapshot()["topics"]
        name = request.query.get("topic")
        if name:
            topics = [entry for entry in topics if entry["topic"] == name]
        return _json_response(topics)


def _json_response(payload: Any, status: int = 200) -> aiohttp_web.Response:
    return aiohttp_web.Response(body=orjson.dumps(payload), status=status, content_type="application/json")


__all__ = ["MonitorOptions", "MonitorServer"]
