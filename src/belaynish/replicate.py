from __future__ import annotations

from typing import Any

import httpx
import msgspec

from .logging import get_logger

logger = get_logger(__name__)

WEBHOOK_EVENTS = ["start", "output", "logs", "completed"]


class ReplicateError(RuntimeError):
    pass


class Prediction(msgspec.Struct, forbid_unknown_fields=False):
    id: str
    status: str | None = None
    version: str | None = None


class ReplicateClient:
    """Creates predictions whose progress is reported back via webhook."""

    def __init__(
        self,
        api_token: str,
        *,
        api_base: str = "https://api.replicate.com/v1",
        webhook_url: str | None = None,
        timeout_s: float = 30,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_token:
            raise ValueError("Replicate API token is empty")
        self._api_base = api_base.rstrip("/")
        self._headers = {"Authorization": f"Token {api_token}"}
        self._webhook_url = webhook_url
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_http_client = http_client is None

    async def close(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def _prediction_request(
        self, model: str, input: dict[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        payload: dict[str, Any] = {"input": input}
        if self._webhook_url is not None:
            payload["webhook"] = self._webhook_url
            payload["webhook_events_filter"] = list(WEBHOOK_EVENTS)
        # owner/name[:version] targets the model endpoint unless a version is pinned
        owner_name, _, version = model.partition(":")
        if "/" in owner_name and not version:
            return f"{self._api_base}/models/{owner_name}/predictions", payload
        payload["version"] = version or owner_name
        return f"{self._api_base}/predictions", payload

    async def create_prediction(self, model: str, input: dict[str, Any]) -> Prediction:
        url, payload = self._prediction_request(model, input)
        logger.debug("replicate.request", url=url, model=model)
        try:
            resp = await self._http_client.post(url, json=payload, headers=self._headers)
        except httpx.HTTPError as exc:
            logger.error(
                "replicate.network_error",
                url=url,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise ReplicateError(f"Replicate request failed: {exc}") from exc
        if resp.status_code >= 400:
            logger.error(
                "replicate.http_error",
                url=url,
                status=resp.status_code,
                body=resp.text,
            )
            raise ReplicateError(f"Replicate create failed: {resp.text[:500]}")
        try:
            prediction = msgspec.json.decode(resp.content, type=Prediction)
        except msgspec.DecodeError as exc:
            logger.error(
                "replicate.decode_error",
                url=url,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            raise ReplicateError("Replicate returned an unexpected response") from exc
        logger.info("replicate.created", prediction_id=prediction.id, model=model)
        return prediction
