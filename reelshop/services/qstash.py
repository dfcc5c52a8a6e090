"""QStash push-queue client and callback signature verification."""

import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional

import httpx

from reelshop.utils.errors import QueuePublishError, SignatureError
from reelshop.utils.retry import with_retry

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Upstash-Signature"
ISSUER = "Upstash"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _b64url_decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def _should_give_up(e: Exception) -> bool:
    """Client errors other than rate limiting will not succeed on retry."""
    return (
        isinstance(e, QueuePublishError)
        and 400 <= e.status_code < 500
        and e.status_code != 429
    )


class QStashClient:
    """Publishes JSON messages to QStash for delivery to a callback URL."""

    def __init__(
        self,
        token: str,
        base_url: str = "https://qstash.upstash.io",
        retries: int = 3,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.retries = retries
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.transport = transport

    async def publish_json(self, destination: str, body: Dict[str, Any]) -> str:
        """
        Publish a message, retrying 5xx, 429 and connection errors.

        Args:
            destination: Callback URL QStash will POST the body to
            body: JSON body

        Returns:
            QStash message id

        Raises:
            QueuePublishError: If QStash rejects the request
        """
        publish = with_retry(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            exceptions=(QueuePublishError, httpx.TransportError),
            give_up=_should_give_up,
        )(self._publish)
        return await publish(destination, body)

    async def _publish(self, destination: str, body: Dict[str, Any]) -> str:
        async with httpx.AsyncClient(transport=self.transport) as client:
            response = await client.post(
                f"{self.base_url}/v2/publish/{destination}",
                json=body,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Content-Type": "application/json",
                    "Upstash-Retries": str(self.retries),
                },
                timeout=30.0,
            )

        if response.status_code not in (200, 201, 202):
            raise QueuePublishError(response.status_code, response.text)

        message_id = response.json().get("messageId", "")
        logger.info(f"Published message {message_id} to {destination}")
        return message_id


class QStashReceiver:
    """
    Verifies the signed JWT QStash attaches to each callback.

    The token is HS256-signed with the current signing key, or the next one
    during key rotation, so both are tried in that order.
    """

    def __init__(
        self,
        current_signing_key: str,
        next_signing_key: str = "",
        clock_tolerance: int = 5,
    ) -> None:
        self.keys = [k for k in (current_signing_key, next_signing_key) if k]
        self.clock_tolerance = clock_tolerance

    def verify(
        self, signature: Optional[str], body: bytes, url: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Verify a callback and return the token claims.

        Raises:
            SignatureError: If the signature is missing or invalid for every key
        """
        if not signature:
            raise SignatureError("Missing Upstash-Signature header")
        if not self.keys:
            raise SignatureError("No signing keys configured")

        last_error: Optional[SignatureError] = None
        for key in self.keys:
            try:
                return self._verify_with_key(signature, key, body, url)
            except SignatureError as e:
                last_error = e

        raise last_error  # type: ignore[misc]

    def _verify_with_key(
        self, token: str, key: str, body: bytes, url: Optional[str]
    ) -> Dict[str, Any]:
        parts = token.split(".")
        if len(parts) != 3:
            raise SignatureError("Malformed signature token")
        header_b64, claims_b64, signature_b64 = parts

        expected = _b64url(
            hmac.new(key.encode(), f"{header_b64}.{claims_b64}".encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected, signature_b64.rstrip("=")):
            raise SignatureError("Invalid signature")

        try:
            header = json.loads(_b64url_decode(header_b64))
            claims = json.loads(_b64url_decode(claims_b64))
        except ValueError:
            raise SignatureError("Undecodable signature token")

        if header.get("alg") != "HS256":
            raise SignatureError(f"Unexpected token algorithm: {header.get('alg')}")
        if claims.get("iss") != ISSUER:
            raise SignatureError(f"Unexpected issuer: {claims.get('iss')}")

        now = time.time()
        if "exp" in claims and now > claims["exp"] + self.clock_tolerance:
            raise SignatureError("Signature expired")
        if "nbf" in claims and now < claims["nbf"] - self.clock_tolerance:
            raise SignatureError("Signature not yet valid")
        if url is not None and claims.get("sub") not in (None, url):
            raise SignatureError(f"Signature issued for {claims.get('sub')}, not {url}")

        body_hash = _b64url(hashlib.sha256(body).digest())
        if str(claims.get("body", "")).rstrip("=") != body_hash:
            raise SignatureError("Body hash does not match signature")

        return claims
