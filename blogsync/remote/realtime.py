"""Change notifications over the hosted store's realtime websocket.

Speaks the Phoenix channel protocol: join a ``realtime:<channel>`` topic
with a ``postgres_changes`` filter, keep the socket alive with heartbeats,
and turn each ``postgres_changes`` message into a ChangeEvent.
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Callable

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..config import RealtimeConfig, RemoteConfig
from ..errors import RemoteError
from ..models import ChangeEvent
from .base import ChangeFeed, ChangeSubscription

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "1.0.0"


class RealtimeChangeFeed(ChangeFeed):
    """ChangeFeed backed by the realtime websocket endpoint."""

    def __init__(
        self,
        remote: RemoteConfig,
        realtime: RealtimeConfig,
        connector: Callable[[str], Any] = connect,
    ):
        """Initialize the feed.

        Args:
            remote: Remote connection settings (url, anon key, schema).
            realtime: Channel name and timing settings.
            connector: Coroutine factory opening a websocket for a URL.
        """
        self.remote = remote
        self.realtime = realtime
        self._connector = connector

    @property
    def socket_url(self) -> str:
        return (
            f"{self.remote.realtime_url}"
            f"?apikey={self.remote.anon_key}&vsn={PROTOCOL_VERSION}"
        )

    async def subscribe(
        self,
        table: str,
        access_token: str | None = None,
        event: str = "*",
    ) -> ChangeSubscription:
        try:
            ws = await self._connector(self.socket_url)
        except (OSError, WebSocketException) as e:
            raise RemoteError(f"Realtime connection failed: {e}") from e

        channel = _Channel(
            ws,
            topic=f"realtime:{self.realtime.channel}",
            heartbeat_interval=self.realtime.heartbeat_interval_seconds,
        )
        try:
            await channel.join(
                {
                    "config": {
                        "broadcast": {"ack": False, "self": False},
                        "presence": {"key": ""},
                        "postgres_changes": [
                            {"event": event, "schema": self.remote.schema, "table": table}
                        ],
                    },
                    "access_token": access_token or self.remote.anon_key,
                },
                timeout=self.realtime.join_timeout_seconds,
            )
        except BaseException:
            await channel.shutdown()
            raise

        logger.info(f"Subscribed to changes on {self.remote.schema}.{table}")
        return channel.subscription


class _Channel:
    """One joined topic on an open socket."""

    def __init__(self, ws: Any, topic: str, heartbeat_interval: float):
        self._ws = ws
        self.topic = topic
        self._heartbeat_interval = heartbeat_interval
        self._refs = itertools.count(1)
        self._join_ref: str | None = None
        self._pending: dict[str, asyncio.Future] = {}
        self._reader: asyncio.Task | None = None
        self._heartbeat: asyncio.Task | None = None
        self.subscription = ChangeSubscription(
            on_close=self.shutdown, on_token=self.push_access_token
        )

    def _next_ref(self) -> str:
        return str(next(self._refs))

    async def _send(self, topic: str, event: str, payload: dict[str, Any]) -> str:
        ref = self._next_ref()
        message = {
            "topic": topic,
            "event": event,
            "payload": payload,
            "ref": ref,
            "join_ref": self._join_ref,
        }
        await self._ws.send(json.dumps(message))
        return ref

    async def join(self, payload: dict[str, Any], timeout: float) -> None:
        """Join the topic and wait for the server's reply.

        Raises:
            RemoteError: If the server rejects the join or does not answer.
        """
        self._join_ref = self._next_ref()
        reply: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[self._join_ref] = reply
        self._reader = asyncio.create_task(self._read_loop())

        await self._ws.send(
            json.dumps(
                {
                    "topic": self.topic,
                    "event": "phx_join",
                    "payload": payload,
                    "ref": self._join_ref,
                    "join_ref": self._join_ref,
                }
            )
        )

        try:
            response = await asyncio.wait_for(reply, timeout=timeout)
        except asyncio.TimeoutError:
            raise RemoteError(f"Timed out joining {self.topic}") from None

        if response.get("status") != "ok":
            reason = response.get("response", {})
            raise RemoteError(f"Join of {self.topic} rejected: {reason}")

        self._heartbeat = asyncio.create_task(self._heartbeat_loop())

    async def push_access_token(self, token: str) -> None:
        """Tell the server the joined topic now runs under ``token``."""
        await self._send(self.topic, "access_token", {"access_token": token})
        logger.debug(f"Sent refreshed access token on {self.topic}")

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await self._send("phoenix", "heartbeat", {})
            except ConnectionClosed:
                return

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                self._dispatch(json.loads(raw))
        except ConnectionClosed as e:
            logger.warning(f"Realtime socket closed: {e}")
        except json.JSONDecodeError as e:
            logger.error(f"Malformed realtime message: {e}")
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_result({"status": "error", "response": "socket closed"})
            self._pending.clear()
            self.subscription.finish()

    def _dispatch(self, message: dict[str, Any]) -> None:
        event = message.get("event")
        payload = message.get("payload") or {}

        if event == "phx_reply":
            future = self._pending.pop(str(message.get("ref")), None)
            if future and not future.done():
                future.set_result(payload)
            return

        if message.get("topic") != self.topic:
            return

        if event == "postgres_changes":
            data = payload.get("data") or {}
            try:
                change = ChangeEvent.from_payload(
                    data.get("type", ""),
                    data.get("record"),
                    data.get("old_record"),
                )
            except (KeyError, ValueError) as e:
                logger.warning(f"Ignoring unparseable change payload: {e}")
                return
            logger.debug(
                f"Change received: {change.event_type.value}",
                extra={"event": change.event_type.value},
            )
            self.subscription.put(change)
        elif event == "phx_error":
            logger.error(f"Channel {self.topic} error: {payload}")
        elif event == "phx_close":
            logger.info(f"Channel {self.topic} closed by server")
            self.subscription.finish()
        elif event == "system" and payload.get("status") == "error":
            logger.error(f"Channel {self.topic} system error: {payload.get('message')}")

    async def shutdown(self) -> None:
        """Leave the topic and close the socket."""
        if self._heartbeat:
            self._heartbeat.cancel()
        try:
            if self._join_ref is not None:
                await self._send(self.topic, "phx_leave", {})
        except ConnectionClosed:
            pass
        finally:
            await self._ws.close()
            if self._reader and self._reader is not asyncio.current_task():
                self._reader.cancel()
                try:
                    await self._reader
                except asyncio.CancelledError:
                    pass
            self.subscription.finish()
