"""Oracle backed by the hosted `analyze_navigation_steps` HTTP function."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import aiohttp

from .config import OptimizerConfig
from .oracle import (
    InvalidOracleResponse,
    OracleInvalidResponse,
    OracleOk,
    OracleRequest,
    OracleResult,
    OracleTimedOut,
    OracleTransportError,
    parse_oracle_response,
)

logger = logging.getLogger(__name__)


class EndpointOracle:
    """POST one batched request per sequence and map every outcome to an OracleResult."""

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        timeout_s: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._session = session

    @classmethod
    def from_config(cls, config: OptimizerConfig) -> Optional["EndpointOracle"]:
        endpoint = config.oracle_endpoint
        if not endpoint:
            return None
        return cls(endpoint, api_key=config.oracle_api_key, timeout_s=config.oracle_timeout_s)

    async def analyze(self, request: OracleRequest) -> OracleResult:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        logger.debug("Calling oracle for %s steps at %s", len(request.steps), self.endpoint)
        try:
            if self._session is not None:
                return await self._post(self._session, request, headers)
            async with aiohttp.ClientSession() as session:
                return await self._post(session, request, headers)
        except asyncio.TimeoutError:
            return OracleTimedOut(timeout_s=self.timeout_s)
        except aiohttp.ClientError as exc:
            return OracleTransportError(message=str(exc) or type(exc).__name__)

    async def _post(
        self,
        session: aiohttp.ClientSession,
        request: OracleRequest,
        headers: dict,
    ) -> OracleResult:
        async with session.post(
            self.endpoint,
            json=request.to_wire(),
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout_s),
        ) as resp:
            raw = await resp.read()
            charset = resp.charset or "utf-8"
            if resp.status < 200 or resp.status >= 300:
                message = raw.decode("utf-8", errors="replace")[:200]
                logger.warning("Oracle HTTP error %d: %s", resp.status, message)
                return OracleTransportError(message=message, status=resp.status)

        try:
            body = json.loads(raw.decode(charset))
            return OracleOk(response=parse_oracle_response(body))
        except (UnicodeDecodeError, LookupError, json.JSONDecodeError, InvalidOracleResponse) as exc:
            return OracleInvalidResponse(message=str(exc))
