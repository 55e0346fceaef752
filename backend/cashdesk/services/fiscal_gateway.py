# Overview: Fiscal authority gateway contract and its httpx implementation.

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx


logger = logging.getLogger(__name__)


OUTCOME_OK = "ok"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_IN_PROGRESS = "in_progress"
OUTCOME_FAILED = "failed"

# Messages the fiscal endpoint uses while it still holds the per-sale lock
IN_PROGRESS_SIGNATURES = (
    "fiskalizacija je u toku",
    "submission in progress",
)


def is_in_progress_message(message: Optional[str]) -> bool:
    if not message:
        return False
    lowered = message.lower()
    return any(signature in lowered for signature in IN_PROGRESS_SIGNATURES)


@dataclass(frozen=True)
class GatewayResult:
    """Tagged result of one gateway call; callers branch on ``outcome`` only."""
    outcome: str
    fiscal_number: Optional[str] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == OUTCOME_OK

    @classmethod
    def success(cls, fiscal_number: Optional[str] = None) -> "GatewayResult":
        return cls(OUTCOME_OK, fiscal_number=fiscal_number)

    @classmethod
    def not_found(cls, message: Optional[str] = None) -> "GatewayResult":
        return cls(OUTCOME_NOT_FOUND, message=message)

    @classmethod
    def in_progress(cls, message: str) -> "GatewayResult":
        return cls(OUTCOME_IN_PROGRESS, message=message)

    @classmethod
    def failed(cls, message: str) -> "GatewayResult":
        return cls(OUTCOME_FAILED, message=message)


class FiscalGateway(Protocol):
    def reset(self, sale_id: int) -> GatewayResult:
        ...

    def submit(self, sale_id: int, facility_id: int) -> GatewayResult:
        ...


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("message", "error", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    text = response.text.strip()
    return text or f"Fiscal gateway returned HTTP {response.status_code}"


def _fiscal_number(payload) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    nested = payload.get("fiscal")
    if isinstance(nested, dict):
        payload = nested
    value = payload.get("fiscal_number") or payload.get("fiscalNumber")
    return str(value) if value else None


class HttpFiscalGateway:
    """
    Fiscal gateway over HTTP.

    Endpoints:
        POST {base_url}/sales/{sale_id}/fiscalize/reset
        POST {base_url}/sales/{sale_id}/fiscalize   body: {"facility": <id>}

    Transport errors and timeouts come back as ``failed`` results so the
    controller can record them; nothing here raises for gateway conditions.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout, headers=headers)

    @classmethod
    def from_config(cls, config) -> "HttpFiscalGateway":
        base_url = config.get("FISCAL_GATEWAY_URL")
        if not base_url:
            raise RuntimeError("FISCAL_GATEWAY_URL is not configured")
        return cls(
            base_url=base_url,
            token=config.get("FISCAL_GATEWAY_TOKEN"),
            timeout=float(config.get("FISCAL_REQUEST_TIMEOUT_SECONDS", 15)),
        )

    def close(self) -> None:
        self._client.close()

    @property
    def closed(self) -> bool:
        return self._client.is_closed

    def __enter__(self) -> "HttpFiscalGateway":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _post(self, path: str, json_body: Optional[dict] = None):
        try:
            return self._client.post(path, json=json_body), None
        except httpx.TimeoutException as exc:
            logger.warning("Fiscal gateway timeout on %s: %s", path, exc)
            return None, f"Fiscal gateway timed out: {exc}"
        except httpx.TransportError as exc:
            logger.warning("Fiscal gateway transport error on %s: %s", path, exc)
            return None, f"Fiscal gateway unreachable: {exc}"

    def reset(self, sale_id: int) -> GatewayResult:
        response, error = self._post(f"/sales/{sale_id}/fiscalize/reset")
        if error:
            return GatewayResult.failed(error)
        if response.status_code == 404:
            return GatewayResult.not_found(_error_message(response))
        if response.status_code >= 400:
            return GatewayResult.failed(_error_message(response))
        return GatewayResult.success()

    def submit(self, sale_id: int, facility_id: int) -> GatewayResult:
        response, error = self._post(f"/sales/{sale_id}/fiscalize", {"facility": facility_id})
        if error:
            return GatewayResult.failed(error)

        if response.status_code >= 400:
            message = _error_message(response)
            if is_in_progress_message(message):
                return GatewayResult.in_progress(message)
            return GatewayResult.failed(message)

        try:
            payload = response.json()
        except ValueError:
            payload = None
        number = _fiscal_number(payload)
        if not number:
            return GatewayResult.failed("Fiscal gateway response did not include a fiscal number")
        return GatewayResult.success(number)
