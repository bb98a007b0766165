from __future__ import annotations

import httpx
import pytest

from docseal.connectivity import Connectivity

PROBE_URL = "https://db.example.org/rest/v1/"


def _probe(handler) -> Connectivity:
    return Connectivity(PROBE_URL, timeout=1.0, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
@pytest.mark.parametrize(("status", "expected"), [(200, True), (204, True), (405, True), (500, False)])
async def test_probe_status_decides(status, expected):
    connectivity = _probe(lambda request: httpx.Response(status))
    assert await connectivity.check() is expected
    assert connectivity.last_result is expected


@pytest.mark.asyncio
async def test_probe_uses_uncached_head_request():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    await _probe(handler).check()

    assert seen[0].method == "HEAD"
    assert seen[0].headers["cache-control"] == "no-store"


@pytest.mark.asyncio
async def test_unreachable_probe_means_offline():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("no route to host", request=request)

    assert await _probe(handler).check() is False


@pytest.mark.asyncio
async def test_offline_flag_short_circuits_probe():
    seen: list[httpx.Request] = []
    connectivity = Connectivity(
        PROBE_URL,
        offline=True,
        transport=httpx.MockTransport(lambda request: seen.append(request) or httpx.Response(200)),
    )

    assert await connectivity.check() is False
    assert seen == []

    connectivity.set_offline(False)
    assert await connectivity.check() is True


@pytest.mark.asyncio
async def test_without_probe_url_flag_alone_decides():
    assert await Connectivity().check() is True
    assert await Connectivity(offline=True).check() is False
