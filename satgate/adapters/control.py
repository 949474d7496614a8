"""Mission control adapter providing the gateway websocket and REST helpers."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
from pathlib import Path
from typing import Any, AsyncIterator, Mapping, Optional
from urllib.parse import urlparse, urlunparse

import aiohttp

from ..config import ControlConfig
from ..constants import GATEWAY_API_PATH
from ..core import CommandHandler
from ..errors import ControlConnectionError

LOGGER = logging.getLogger(__name__)

UPLOAD_PATH = f"{GATEWAY_API_PATH}/downlinked_files"


class MissionControlClient:
    """Non-blocking connection to mission control's gateway API."""

    def __init__(
        self,
        config: ControlConfig,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config
        self.reconnect_initial = config.reconnect_initial_seconds
        self.reconnect_max = config.reconnect_max_seconds

        self._base_url = self.config.base_url.rstrip("/")
        self._headers = {}
        if self.config.gateway_token:
            self._headers["X-Gateway-Token"] = self.config.gateway_token

        self._session: Optional[aiohttp.ClientSession] = session
        self._owns_session = session is None
        self._command_handler: Optional[CommandHandler] = None
        self._listener_task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._active_ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._connected_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def connected(self) -> bool:
        ws = self._active_ws
        return ws is not None and not ws.closed

    def set_command_handler(self, handler: Optional[CommandHandler]) -> None:
        self._command_handler = handler

    async def start(self) -> None:
        """Start listening for commands on the gateway websocket."""

        if self._listener_task is not None:
            return

        await self._ensure_session()
        self._stop_event.clear()
        self._listener_task = asyncio.create_task(self._listen_loop())
        await asyncio.sleep(0)

    async def wait_connected(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)

    async def stop(self) -> None:
        """Stop listening and close the underlying resources."""

        self._stop_event.set()

        if self._listener_task is not None:
            self._listener_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener_task
            self._listener_task = None

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def transmit_command_update(
        self, command_id: str, state: str, command: Mapping[str, Any]
    ) -> None:
        document = dict(command)
        document["id"] = command_id
        document["state"] = state
        await self.transmit({"type": "command_update", "command": document})

    async def transmit_metrics(self, measurements: list[dict[str, Any]]) -> None:
        await self.transmit({"type": "measurements", "measurements": measurements})

    async def transmit_events(self, events: list[dict[str, Any]]) -> None:
        await self.transmit({"type": "events", "events": events})

    async def transmit(self, payload: Mapping[str, Any]) -> None:
        ws = self._active_ws
        if ws is None or ws.closed:
            raise ControlConnectionError(
                f"Not connected to mission control; dropping {payload.get('type')} message"
            )
        await ws.send_str(json.dumps(payload, default=str))

    async def download_staged_file(self, path: str) -> AsyncIterator[bytes]:
        """Stream a file staged on mission control.

        Raises:
            ControlConnectionError: If mission control answers with an error status.
            aiohttp.ClientError: If the HTTP request fails.
        """
        session = await self._ensure_session()
        url = self._resolve(path)

        async with session.get(url, headers=self._headers) as response:
            if response.status >= 400:
                detail = await response.text()
                raise ControlConnectionError(
                    f"Download of {path} failed with status {response.status}: {detail.strip()}"
                )
            async for chunk in response.content.iter_chunked(self.config.download_chunk_size):
                yield chunk

    async def upload_downlinked_file(
        self,
        filename: str,
        path: Path,
        system: Optional[str],
        timestamp: int,
        content_type: str,
        command_id: str,
    ) -> None:
        """Upload a file downlinked from the satellite as multipart form data.

        Raises:
            ControlConnectionError: If mission control answers with an error status.
            aiohttp.ClientError: If the HTTP request fails.
            OSError: If the staged file cannot be read.
        """
        session = await self._ensure_session()
        url = f"{self._base_url}{UPLOAD_PATH}"

        with Path(path).open("rb") as stream:
            form = aiohttp.FormData()
            form.add_field("command_id", str(command_id))
            form.add_field("timestamp", str(timestamp))
            if system:
                form.add_field("system", system)
            form.add_field(
                "file", stream, filename=Path(filename).name, content_type=content_type
            )

            async with session.post(url, data=form, headers=self._headers) as response:
                if response.status >= 400:
                    detail = await response.text()
                    raise ControlConnectionError(
                        f"Upload of {filename} failed with status {response.status}: {detail.strip()}"
                    )

        LOGGER.info("Uploaded downlinked file %s for command %s", filename, command_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=None)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    def _resolve(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self._base_url}/{path.lstrip('/')}"

    async def _listen_loop(self) -> None:
        backoff = self.reconnect_initial

        while not self._stop_event.is_set():
            try:
                session = await self._ensure_session()
                ws_url = _build_ws_url(self._base_url)
                async with session.ws_connect(ws_url, headers=self._headers) as ws:
                    LOGGER.info("Connected to mission control at %s", ws_url)
                    backoff = self.reconnect_initial

                    self._active_ws = ws
                    self._connected_event.set()
                    try:
                        async for message in ws:
                            if self._stop_event.is_set():
                                break
                            if message.type == aiohttp.WSMsgType.TEXT:
                                await self._dispatch(message.data)
                            elif message.type == aiohttp.WSMsgType.ERROR:
                                raise ws.exception() or ControlConnectionError(
                                    "Websocket error"
                                )
                    finally:
                        self._active_ws = None
                        self._connected_event.clear()
                if not self._stop_event.is_set():
                    raise ControlConnectionError("Mission control closed the connection")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self._stop_event.is_set():
                    break
                LOGGER.warning("Mission control websocket error: %s", exc)
                # Full jitter: sleep uniformly in [0, backoff], then double the cap.
                jittered = random.uniform(0, backoff)
                await asyncio.sleep(jittered)
                backoff = min(backoff * 2, self.reconnect_max)

    async def _dispatch(self, raw_data: str) -> None:
        try:
            payload = json.loads(raw_data)
        except json.JSONDecodeError:
            LOGGER.warning("Discarding non-JSON message from mission control")
            return

        if not isinstance(payload, dict):
            return

        message_type = payload.get("type")
        if message_type == "command":
            handler = self._command_handler
            if handler is None:
                LOGGER.warning("No command handler registered; dropping command")
                return
            try:
                result = handler(payload.get("command") or {})
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                LOGGER.exception("Command handler failed")
        elif message_type == "error":
            LOGGER.error("Mission control reported an error: %s", payload.get("error"))
        else:
            LOGGER.debug("Ignoring mission control message of type %s", message_type)


def _build_ws_url(http_url: str) -> str:
    parsed = urlparse(http_url)
    scheme = "ws"
    if parsed.scheme == "https":
        scheme = "wss"

    path = parsed.path.rstrip("/") + GATEWAY_API_PATH
    return urlunparse((scheme, parsed.netloc, path, "", "", ""))
