"""Single connectivity policy shared by the pipeline and the sync queue."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx

from .utils import PROBE_TIMEOUT_S

log = logging.getLogger(__name__)


class Connectivity:
    """``check()`` answers "should we talk to the remote store now?".

    The local offline flag short-circuits to ``False``. Otherwise a HEAD
    probe against *probe_url* decides, bounded by *timeout*; no probe URL
    means the flag alone decides.
    """

    def __init__(
        self,
        probe_url: Optional[str] = None,
        *,
        timeout: float = PROBE_TIMEOUT_S,
        offline: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.probe_url = probe_url
        self.timeout = timeout
        self._offline = offline
        self._transport = transport
        self.last_result: Optional[bool] = None

    @property
    def offline(self) -> bool:
        return self._offline

    def set_offline(self, offline: bool) -> None:
        if offline != self._offline:
            log.info("connectivity: offline flag -> %s", offline)
        self._offline = offline

    async def _probe(self) -> bool:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.head(self.probe_url, headers={"Cache-Control": "no-store"})
        # 405 still proves the server answered.
        return resp.is_success or resp.status_code == 405

    async def check(self) -> bool:
        if self._offline:
            self.last_result = False
            return False
        if not self.probe_url:
            self.last_result = True
            return True
        try:
            result = await asyncio.wait_for(self._probe(), timeout=self.timeout)
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            log.warning("connectivity: probe failed: %s", exc)
            result = False
        self.last_result = result
        return result
