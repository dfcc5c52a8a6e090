"""Property-based tests for QStash publishing and callback verification.

Feature: reelshop
Properties: only correctly signed callbacks verify, key rotation is honored,
publish retries only what can succeed later.
"""

import time
from typing import Callable, List
from unittest.mock import patch

import httpx
import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from reelshop.services.qstash import QStashClient, QStashReceiver
from reelshop.utils.errors import QueuePublishError, SignatureError

fixture_ok = settings(
    max_examples=100, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture]
)

CURRENT_KEY = "sig_current_test_key"
NEXT_KEY = "sig_next_test_key"
WORKER_URL = "https://reelshop.example/api/queue/worker"

bodies = st.binary(min_size=1, max_size=512)


class TestSignatureVerification:
    """
    *For any* body, a token signed over that body with a configured key SHALL
    verify, and the same token SHALL be rejected for any other body.
    """

    @fixture_ok
    @given(body=bodies, other=bodies)
    def test_signature_binds_the_body(self, qstash_signer: Callable, body: bytes, other: bytes) -> None:
        receiver = QStashReceiver(CURRENT_KEY, NEXT_KEY)
        token = qstash_signer(body)

        claims = receiver.verify(token, body, url=WORKER_URL)
        assert claims["iss"] == "Upstash"

        if other != body:
            with pytest.raises(SignatureError):
                receiver.verify(token, other, url=WORKER_URL)

    def test_next_key_accepted_during_rotation(self, qstash_signer: Callable) -> None:
        body = b'{"jobId":"file-1"}'
        receiver = QStashReceiver(CURRENT_KEY, NEXT_KEY)
        assert receiver.verify(qstash_signer(body, key=NEXT_KEY), body)

    def test_unknown_key_rejected(self, qstash_signer: Callable) -> None:
        body = b"{}"
        with pytest.raises(SignatureError, match="Invalid signature"):
            QStashReceiver(CURRENT_KEY, NEXT_KEY).verify(qstash_signer(body, key="attacker"), body)

    def test_missing_signature_rejected(self) -> None:
        with pytest.raises(SignatureError, match="Missing"):
            QStashReceiver(CURRENT_KEY).verify(None, b"{}")

    def test_no_keys_configured_rejects_everything(self, qstash_signer: Callable) -> None:
        with pytest.raises(SignatureError, match="No signing keys"):
            QStashReceiver("", "").verify(qstash_signer(b"{}"), b"{}")

    def test_expired_token_rejected(self, qstash_signer: Callable) -> None:
        body = b"{}"
        token = qstash_signer(body, exp=int(time.time()) - 60)
        with pytest.raises(SignatureError, match="expired"):
            QStashReceiver(CURRENT_KEY).verify(token, body)

    def test_wrong_issuer_rejected(self, qstash_signer: Callable) -> None:
        body = b"{}"
        with pytest.raises(SignatureError, match="issuer"):
            QStashReceiver(CURRENT_KEY).verify(qstash_signer(body, iss="Someone"), body)

    def test_token_for_another_url_rejected(self, qstash_signer: Callable) -> None:
        body = b"{}"
        token = qstash_signer(body, url="https://elsewhere.example/hook")
        with pytest.raises(SignatureError):
            QStashReceiver(CURRENT_KEY).verify(token, body, url=WORKER_URL)

    def test_malformed_token_rejected(self) -> None:
        with pytest.raises(SignatureError, match="Malformed"):
            QStashReceiver(CURRENT_KEY).verify("not-a-jwt", b"{}")


class TestPublish:
    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self) -> None:
        statuses = [503, 502, 201]
        calls: List[int] = []
        delays: List[float] = []

        def handle(request: httpx.Request) -> httpx.Response:
            status = statuses[len(calls)]
            calls.append(status)
            return httpx.Response(status, json={"messageId": "msg_1"} if status == 201 else {"error": "busy"})

        async def fake_sleep(delay: float) -> None:
            delays.append(delay)

        client = QStashClient("tok", transport=httpx.MockTransport(handle))
        with patch("reelshop.utils.retry.asyncio.sleep", fake_sleep):
            message_id = await client.publish_json(WORKER_URL, {"jobId": "file-1"})

        assert message_id == "msg_1"
        assert calls == [503, 502, 201]
        assert delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self) -> None:
        calls: List[int] = []

        def handle(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(401, text="invalid token")

        client = QStashClient("bad", transport=httpx.MockTransport(handle))
        with pytest.raises(QueuePublishError) as exc_info:
            await client.publish_json(WORKER_URL, {"jobId": "file-1"})

        assert exc_info.value.status_code == 401
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self) -> None:
        responses = [httpx.Response(429, text="slow down"), httpx.Response(200, json={"messageId": "msg_2"})]

        async def fake_sleep(delay: float) -> None:
            pass

        client = QStashClient("tok", transport=httpx.MockTransport(lambda request: responses.pop(0)))
        with patch("reelshop.utils.retry.asyncio.sleep", fake_sleep):
            assert await client.publish_json(WORKER_URL, {}) == "msg_2"

    @pytest.mark.asyncio
    async def test_configured_attempts_and_delay_are_honored(self) -> None:
        calls: List[int] = []
        delays: List[float] = []

        def handle(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(503, text="busy")

        async def fake_sleep(delay: float) -> None:
            delays.append(delay)

        client = QStashClient("tok", max_attempts=4, base_delay=0.25, transport=httpx.MockTransport(handle))
        with patch("reelshop.utils.retry.asyncio.sleep", fake_sleep):
            with pytest.raises(QueuePublishError):
                await client.publish_json(WORKER_URL, {})

        assert len(calls) == 4
        assert delays == [0.25, 0.5, 1.0]
