"""Serve local files to the page by intercepting its requests (CDP Fetch domain).

GET requests under the base URL are fulfilled from the root directory (or
answered with 404, or 500 when the file cannot be read); every successfully
served resource is handed to the dispatcher, which decides whether it is
worth watching. Other requests pass through untouched.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any

from .dispatch import ChangeDispatcher
from .errors import CdpCommandError, CdpTimeoutError
from .session_cdp import CdpSession
from .static_files import resolve

logger = logging.getLogger("hotpatch.interceptor")


class RequestInterceptor:
    def __init__(self, session: CdpSession, dispatcher: ChangeDispatcher, *, root_dir: str, base_url: str) -> None:
        self.session = session
        self.dispatcher = dispatcher
        self.root_dir = root_dir
        self.base_url = base_url
        self._unsubscribe = None

    async def enable(self) -> None:
        self._unsubscribe = self.session.on("Fetch.requestPaused", self.on_request_paused)
        await self.session.send(
            "Fetch.enable",
            {"patterns": [{"urlPattern": f"{self.base_url}*", "requestStage": "Request"}]},
        )

    def disable(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def on_request_paused(self, params: dict[str, Any]) -> None:
        request_id = params.get("requestId")
        request = params.get("request") if isinstance(params.get("request"), dict) else {}
        url = str(request.get("url") or "")
        method = str(request.get("method") or "GET").upper()
        if not request_id:
            return

        try:
            if method != "GET" or not url.startswith(self.base_url):
                await self.session.send("Fetch.continueRequest", {"requestId": request_id})
                return

            try:
                served = await asyncio.to_thread(resolve, self.root_dir, self.base_url, url)
            except OSError as exc:
                logger.warning("cannot read %s: %s", url, exc)
                await self.session.send(
                    "Fetch.fulfillRequest",
                    {"requestId": request_id, "responseCode": 500, "responseHeaders": []},
                )
                return
            if served is None:
                logger.info("not found %s", url)
                await self.session.send(
                    "Fetch.fulfillRequest",
                    {"requestId": request_id, "responseCode": 404, "responseHeaders": []},
                )
                return

            await self.session.send(
                "Fetch.fulfillRequest",
                {
                    "requestId": request_id,
                    "responseCode": 200,
                    "responseHeaders": [{"name": "Content-Type", "value": served.content_type}],
                    "body": base64.b64encode(served.body).decode("ascii"),
                },
            )
        except (CdpCommandError, CdpTimeoutError) as exc:
            # The page may have navigated away and cancelled the request.
            logger.warning("request %s not answered: %s", url or request_id, exc)
            return

        logger.debug("served %s (%s, %d bytes)", url, served.content_type, len(served.body))
        self.dispatcher.register_resource(url, served.path, served.content_type, served.body)
        self.dispatcher.watch(url, served.path, served.content_type)


__all__ = ["RequestInterceptor"]
