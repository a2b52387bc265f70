"""
Vehicle Data Gateway Client
===========================
POSTs lookups to the Lambda-style gateway that fronts the vehicle data
provider, with a per-attempt timeout and a bounded number of retries.

Only transport failures (timeouts, refused or reset connections) are
retried. Any HTTP response, including 4xx/5xx, is returned to the caller
for classification.

Usage:
    from app.services.upstream_gateway import UpstreamGatewayClient

    gateway = UpstreamGatewayClient()
    payload = gateway.build_payload("fastag", "KA01AB1234")
    response = await gateway.call("fastag", payload)
    if response.parsed_body is not None:
        ...
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from app.core.config import settings
from app.core.exceptions import UpstreamNotConfiguredError, UpstreamTransportError
from app.core.logging_config import logger, get_request_id


@dataclass
class GatewayResponse:
    """One gateway round trip after retries"""
    service: str
    status_code: int
    ok: bool
    raw_body: str
    parsed_body: Optional[Dict[str, Any]]
    attempts: int
    duration_ms: float = 0.0
    headers: Dict[str, str] = field(default_factory=dict)


def _loads_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(text)
    except (ValueError, TypeError):
        return None
    return value if isinstance(value, dict) else None


def parse_gateway_body(raw_body: str) -> Optional[Dict[str, Any]]:
    """
    Best-effort JSON object from a gateway response body.

    - plain JSON object
    - text wrapping a JSON object ("Lambda said: {...}")
    - Lambda proxy envelope whose "body" is itself a JSON string

    Returns None when no object can be recovered.
    """
    if not raw_body or not raw_body.strip():
        return None

    parsed = _loads_object(raw_body)
    if parsed is None:
        start = raw_body.find("{")
        end = raw_body.rfind("}")
        if start == -1 or end <= start:
            return None
        parsed = _loads_object(raw_body[start:end + 1])
        if parsed is None:
            return None

    body = parsed.get("body")
    if isinstance(body, str):
        nested = _loads_object(body)
        if nested is not None:
            parsed = {**parsed, "body": nested}

    return parsed


class UpstreamGatewayClient:
    """HTTP client for the vehicle data gateway"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        proxy_token: Optional[str] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url if base_url is not None else settings.VEHICLE_GATEWAY_URL
        self.proxy_token = proxy_token if proxy_token is not None else settings.VEHICLE_GATEWAY_PROXY_TOKEN
        self.api_key = api_key if api_key is not None else settings.VEHICLE_GATEWAY_API_KEY
        self._transport = transport
        self._sleep = sleep

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url) and self.base_url.startswith(("http://", "https://"))

    @staticmethod
    def build_payload(
        service: str,
        vehicle_number: str,
        chassis: Optional[str] = None,
        engine_no: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"service": service, "vehicleId": vehicle_number}
        if chassis:
            payload["chassis"] = chassis
        if engine_no:
            payload["engine_no"] = engine_no
        return payload

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.proxy_token:
            headers["x-proxy-token"] = self.proxy_token
        if self.api_key:
            headers["x-api-key"] = self.api_key
        request_id = get_request_id()
        if request_id:
            headers["X-Request-ID"] = request_id
        return headers

    @staticmethod
    def backoff_delay(backoff: str, base_delay: float, attempt: int) -> float:
        """Delay before retrying after failed attempt number `attempt` (1-based)"""
        if backoff == "linear":
            return base_delay * attempt
        return base_delay * (2 ** (attempt - 1))

    async def call(
        self,
        service: str,
        payload: Dict[str, Any],
        max_attempts: Optional[int] = None,
    ) -> GatewayResponse:
        """
        POST payload to the gateway.

        Raises:
            UpstreamNotConfiguredError: gateway URL missing or not http(s)
            UpstreamTransportError: every attempt failed at the transport level
        """
        if not self.is_configured:
            raise UpstreamNotConfiguredError(service)

        policy = settings.gateway_policy(service)
        attempts_allowed = max(1, max_attempts or policy["max_attempts"])
        attempt_deadline = policy["timeout"]
        timeout = httpx.Timeout(attempt_deadline)
        headers = self._headers()

        last_error = ""
        started = time.perf_counter()

        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            for attempt in range(1, attempts_allowed + 1):
                attempt_started = time.perf_counter()
                try:
                    # httpx timeouts apply per read; the deadline bounds the whole attempt
                    response = await asyncio.wait_for(
                        client.post(self.base_url, json=payload, headers=headers),
                        timeout=attempt_deadline,
                    )
                except asyncio.TimeoutError:
                    last_error = f"Attempt exceeded {attempt_deadline:g}s deadline"
                except httpx.TransportError as e:
                    last_error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
                else:
                    last_error = ""

                if last_error:
                    logger.log_upstream_call(
                        service, attempt, attempts_allowed,
                        duration_ms=(time.perf_counter() - attempt_started) * 1000,
                        error=last_error,
                    )
                    if attempt < attempts_allowed:
                        await self._sleep(
                            self.backoff_delay(policy["backoff"], policy["base_delay"], attempt)
                        )
                    continue

                duration_ms = (time.perf_counter() - attempt_started) * 1000
                logger.log_upstream_call(
                    service, attempt, attempts_allowed,
                    status_code=response.status_code,
                    duration_ms=duration_ms,
                )

                raw_body = response.text
                return GatewayResponse(
                    service=service,
                    status_code=response.status_code,
                    ok=response.is_success,
                    raw_body=raw_body,
                    parsed_body=parse_gateway_body(raw_body),
                    attempts=attempt,
                    duration_ms=(time.perf_counter() - started) * 1000,
                    headers=dict(response.headers),
                )

        raise UpstreamTransportError(service, attempts_allowed, last_error)
