"""
Circle attestation service client.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from .errors import AttestationTimeout

logger = structlog.get_logger()


@dataclass(frozen=True)
class RetryPolicy:
    """
    Poll every `interval` seconds; transient errors are retried, only
    running past `timeout` seconds ends polling.
    """

    interval: float = 5.0
    timeout: float = 15 * 60


def parse_attestation(payload: Any) -> Optional[str]:
    """Attestation from a response body, or None while it is pending."""
    if not isinstance(payload, dict):
        return None
    attestation = payload.get("attestation")
    if str(payload.get("status", "")).lower() != "complete":
        return None
    if not attestation or attestation == "PENDING":
        return None
    return str(attestation)


class AttestationPoller:
    """
    Polls the attestation API for a signed attestation of a CCTP message.

    GET <base_url>/<message hash hex, no 0x> -> {"status": "complete",
    "attestation": "0x..."} once Circle has signed the burn.
    """

    def __init__(
        self,
        base_url: str,
        policy: RetryPolicy = RetryPolicy(),
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.policy = policy
        self.client = client or httpx.AsyncClient(timeout=30.0)

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    def url_for(self, message_hash: str) -> str:
        hash_for_url = message_hash[2:] if message_hash.startswith("0x") else message_hash
        return f"{self.base_url}/{hash_for_url}"

    async def fetch(self, message_hash: str) -> Optional[str]:
        """
        One attempt.

        Returns the attestation, or None if it is not available yet.
        Raises httpx/JSON errors as-is.
        """
        response = await self.client.get(self.url_for(message_hash))
        # 404 until Circle has indexed the burn
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return parse_attestation(response.json())

    async def poll(self, message_hash: str, policy: Optional[RetryPolicy] = None) -> str:
        """
        Poll until an attestation is available.

        Raises:
            AttestationTimeout: if none arrives within the policy timeout
        """
        policy = policy or self.policy
        deadline = time.monotonic() + policy.timeout
        attempt = 0

        while True:
            attempt += 1
            try:
                attestation = await self.fetch(message_hash)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(
                    "attestation_poll_error",
                    message_hash=message_hash,
                    attempt=attempt,
                    error=str(e),
                )
                attestation = None

            if attestation:
                logger.info("attestation_received", message_hash=message_hash, attempts=attempt)
                return attestation

            logger.debug("attestation_pending", message_hash=message_hash, attempt=attempt)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.error(
                    "attestation_timeout",
                    message_hash=message_hash,
                    attempts=attempt,
                    timeout=policy.timeout,
                )
                raise AttestationTimeout(message_hash, policy.timeout)

            await asyncio.sleep(min(policy.interval, remaining))
