"""HTTP JSON API exposing the registered bulbs.

Each accessory gets an On characteristic:
  GET  /accessories/{uuid}/power  -> {"on": bool}, asks the bulb
  POST /accessories/{uuid}/power  <- {"on": bool}, switches the bulb

Control-channel failures become HTTP errors: an unreachable or garbled
bulb is 502, a silent one 504, a bulb without a usable location 409.
"""

import logging
from typing import Optional

from aiohttp import web

from .exceptions import (
    CommandTimeoutError,
    ConnectError,
    ControlError,
    DecodeError,
    PreconditionError,
)
from .platform import YeelightPlatform

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    PreconditionError: 409,
    ConnectError: 502,
    DecodeError: 502,
    CommandTimeoutError: 504,
}


def _error_response(error: ControlError) -> web.Response:
    status = _ERROR_STATUS.get(type(error), 500)
    return web.json_response(
        {"error": type(error).__name__, "message": str(error)}, status=status,
    )


class AccessoryAPI:
    def __init__(
        self,
        platform: YeelightPlatform,
        http_port: int = 8581,
        bind_ip: str = "0.0.0.0",
    ):
        self._platform = platform
        self._http_port = http_port
        self._bind_ip = bind_ip
        self._runner: Optional[web.AppRunner] = None

    def _lookup(self, request: web.Request):
        uuid = request.match_info["uuid"]
        accessory = self._platform.get(uuid)
        if accessory is None:
            raise web.HTTPNotFound(
                text=f'{{"error": "unknown accessory {uuid}"}}',
                content_type="application/json",
            )
        return accessory

    # ── HTTP Route Handlers ──────────────────────────────────────────────

    async def handle_list(self, request: web.Request) -> web.Response:
        """GET /accessories"""
        return web.json_response(
            [acc.to_dict() for acc in self._platform.accessories.values()]
        )

    async def handle_get(self, request: web.Request) -> web.Response:
        """GET /accessories/{uuid}"""
        return web.json_response(self._lookup(request).to_dict())

    async def handle_get_power(self, request: web.Request) -> web.Response:
        """GET /accessories/{uuid}/power"""
        accessory = self._lookup(request)
        try:
            on = await accessory.get_on()
        except ControlError as e:
            return _error_response(e)
        return web.json_response({"on": on})

    async def handle_set_power(self, request: web.Request) -> web.Response:
        """POST /accessories/{uuid}/power"""
        accessory = self._lookup(request)
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "Invalid JSON"}, status=400)
        if not isinstance(body, dict) or "on" not in body:
            return web.json_response({"error": 'Missing "on"'}, status=400)

        if not isinstance(body["on"], bool):
            return web.json_response({"error": '"on" must be true or false'}, status=400)

        on = body["on"]
        result = await accessory.set_on(on)
        if result.error is not None:
            return _error_response(result.error)
        return web.json_response({"on": on})

    async def handle_discover(self, request: web.Request) -> web.Response:
        """POST /discover: run one discovery cycle now."""
        summary = await self._platform.discover_and_register()
        self._platform.save_cache()
        return web.json_response({
            **summary,
            "accessories": [acc.to_dict() for acc in self._platform.accessories.values()],
        })

    def routes(self) -> list:
        return [
            web.get("/accessories", self.handle_list),
            web.get("/accessories/{uuid}", self.handle_get),
            web.get("/accessories/{uuid}/power", self.handle_get_power),
            web.post("/accessories/{uuid}/power", self.handle_set_power),
            web.post("/discover", self.handle_discover),
        ]

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        app = web.Application()
        app.add_routes(self.routes())
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._bind_ip, self._http_port)
        await site.start()
        logger.info("Accessory API on http://%s:%d", self._bind_ip, self._http_port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Accessory API stopped")
