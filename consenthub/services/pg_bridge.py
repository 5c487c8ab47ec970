"""LISTEN/NOTIFY bridge between Postgres and the in-process change notifier.

When CHANGE_FEED_BACKEND=postgres every process runs one bridge. Writers
pg_notify() inside their transaction; each bridge receives the payload after
commit and republishes it locally. If the listener connection drops, events
sent during the gap are lost, so after reconnecting the bridge signals a gap
and subscribers refetch.
"""

import asyncio
import logging

import asyncpg
from pydantic import ValidationError

from consenthub.schemas.consent import ConsentChange
from consenthub.services.notifier import ChangeNotifier

logger = logging.getLogger("consenthub.notifier.pg")

RECONNECT_DELAYS = (0.5, 1, 2, 5, 10)


class PostgresChangeBridge:
    def __init__(self, dsn: str, channel: str, notifier: ChangeNotifier) -> None:
        self._dsn = dsn
        self._channel = channel
        self._notifier = notifier
        self._conn: asyncpg.Connection | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._stopping = False

    @property
    def connected(self) -> bool:
        return self._conn is not None and not self._conn.is_closed()

    async def start(self) -> None:
        self._stopping = False
        await self._connect()
        logger.info("Listening for consent changes on channel=%s", self._channel)

    async def stop(self) -> None:
        self._stopping = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        if self._conn is not None and not self._conn.is_closed():
            await self._conn.remove_listener(self._channel, self._on_notify)
            await self._conn.close()
        self._conn = None

    async def _connect(self) -> None:
        conn = await asyncpg.connect(self._dsn)
        conn.add_termination_listener(self._on_terminated)
        await conn.add_listener(self._channel, self._on_notify)
        self._conn = conn

    def _on_notify(self, connection, pid: int, channel: str, payload: str) -> None:
        try:
            change = ConsentChange.model_validate_json(payload)
        except ValidationError:
            logger.error("Dropping malformed change payload on channel=%s", channel)
            return
        self._notifier.publish(change)

    def _on_terminated(self, connection) -> None:
        if self._stopping:
            return
        logger.warning("Change feed listener lost its connection; reconnecting")
        self._conn = None
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        attempt = 0
        while not self._stopping:
            delay = RECONNECT_DELAYS[min(attempt, len(RECONNECT_DELAYS) - 1)]
            await asyncio.sleep(delay)
            try:
                await self._connect()
            except (OSError, asyncpg.PostgresError) as exc:
                attempt += 1
                logger.warning("Reconnect attempt %d failed: %s", attempt, exc)
                continue
            logger.info("Change feed listener reconnected after %d attempt(s)", attempt + 1)
            self._notifier.signal_gap()
            return
