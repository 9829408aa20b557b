"""
Tests for the attestation poller.
"""

import httpx
import pytest

from bridge_relay.attestation import AttestationPoller, RetryPolicy, parse_attestation
from bridge_relay.errors import AttestationTimeout

BASE_URL = "https://iris-api-sandbox.circle.com/attestations"
MESSAGE_HASH = "0x" + "ab" * 32
FAST = RetryPolicy(interval=0.01, timeout=0.2)


def make_poller(handler, policy: RetryPolicy = FAST) -> AttestationPoller:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AttestationPoller(BASE_URL, policy, client=client)


class TestParseAttestation:
    def test_complete(self):
        assert parse_attestation({"status": "complete", "attestation": "0xdead"}) == "0xdead"

    def test_pending(self):
        assert parse_attestation({"status": "pending_confirmations", "attestation": None}) is None
        assert parse_attestation({"status": "complete", "attestation": "PENDING"}) is None

    def test_not_a_dict(self):
        assert parse_attestation(["complete"]) is None


class TestPoll:
    @pytest.mark.asyncio
    async def test_url_drops_0x_prefix(self):
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json={"status": "complete", "attestation": "0xbeef"})

        poller = make_poller(handler)
        try:
            assert await poller.poll(MESSAGE_HASH) == "0xbeef"
        finally:
            await poller.aclose()

        assert seen == [f"{BASE_URL}/{'ab' * 32}"]

    @pytest.mark.asyncio
    async def test_waits_until_complete(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls < 3:
                return httpx.Response(200, json={"status": "pending_confirmations"})
            return httpx.Response(200, json={"status": "complete", "attestation": "0xbeef"})

        poller = make_poller(handler)
        try:
            assert await poller.poll(MESSAGE_HASH) == "0xbeef"
        finally:
            await poller.aclose()
        assert calls == 3

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise httpx.ConnectError("connection refused", request=request)
            if calls == 2:
                return httpx.Response(200, text="<html>bad gateway</html>")
            if calls == 3:
                return httpx.Response(503)
            if calls == 4:
                return httpx.Response(404, json={"error": "Message hash not found"})
            return httpx.Response(200, json={"status": "complete", "attestation": "0xbeef"})

        poller = make_poller(handler)
        try:
            assert await poller.poll(MESSAGE_HASH) == "0xbeef"
        finally:
            await poller.aclose()
        assert calls == 5

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "pending_confirmations"})

        poller = make_poller(handler, RetryPolicy(interval=0.01, timeout=0.05))
        try:
            with pytest.raises(AttestationTimeout) as exc_info:
                await poller.poll(MESSAGE_HASH)
        finally:
            await poller.aclose()

        assert exc_info.value.message_hash == MESSAGE_HASH
        assert isinstance(exc_info.value, TimeoutError)

    @pytest.mark.asyncio
    async def test_errors_until_deadline_time_out(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        poller = make_poller(handler, RetryPolicy(interval=0.01, timeout=0.05))
        try:
            with pytest.raises(AttestationTimeout):
                await poller.poll(MESSAGE_HASH)
        finally:
            await poller.aclose()
