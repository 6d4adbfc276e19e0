from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Protocol

import httpx
import structlog
from pydantic import ValidationError

from settlements.config import Settings, load_settings
from settlements.errors import BackendError, PageFetchError
from settlements.models import (
    CreateSettlementRequest,
    Insurer,
    ProvidedServiceRow,
    SettlementFilters,
    SettlementSummary,
)
from settlements.schemas import (
    CancelRequestPayload,
    CreateRequestPayload,
    InformRequestPayload,
    InsurerPayload,
    PreviewRequestPayload,
    ProvidedServicePayload,
    SettlementCompletePayload,
    SettlementResponsePayload,
)

logger = structlog.get_logger(__name__)


class SettlementBackend(Protocol):
    async def fetch_insurer(self, insurer_id: int) -> Insurer: ...

    async def preview_settlement(self, filters: SettlementFilters) -> SettlementCompletePayload: ...

    async def fetch_page(self, base_key: str, page_index: int) -> list[ProvidedServiceRow]: ...

    async def create_settlement(self, request: CreateSettlementRequest) -> SettlementCompletePayload: ...

    async def list_settlements(
        self, insurer_id: int | None = None, date_from: date | None = None, date_to: date | None = None
    ) -> list[SettlementSummary]: ...

    async def inform_settlement(
        self, settlement_id: int, informed_amount: Decimal, informed_date: date, observations: str
    ) -> SettlementSummary: ...

    async def cancel_settlement(self, settlement_id: int, observations: str) -> SettlementSummary: ...


class HttpSettlementBackend:
    """Talks to the coverage service over HTTP with an ``httpx.AsyncClient``.

    Transport errors, non-2xx responses and payloads that do not validate all
    surface as BackendError (PageFetchError for pages).
    """

    def __init__(self, client: httpx.AsyncClient | None = None, settings: Settings | None = None) -> None:
        self.settings = settings or load_settings()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.settings.api_url,
            timeout=self.settings.http_timeout,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("backend_http_error", method=method, url=url, status=status)
            raise BackendError(f"{method} {url} failed with status {status}", upstream_status=status) from exc
        except httpx.HTTPError as exc:
            logger.warning("backend_transport_error", method=method, url=url, error=str(exc))
            raise BackendError(f"{method} {url} failed: {exc}") from exc
        if not response.content:
            return None
        return response.json()

    async def fetch_insurer(self, insurer_id: int) -> Insurer:
        data = await self._request("GET", f"/v1/insurers/{insurer_id}/complete")
        try:
            return InsurerPayload.model_validate(data).to_insurer()
        except ValidationError as exc:
            raise BackendError(f"unexpected insurer payload: {exc}") from exc

    async def preview_settlement(self, filters: SettlementFilters) -> SettlementCompletePayload:
        body = PreviewRequestPayload.from_filters(filters).to_wire()
        data = await self._request("POST", "/v1/coverages/settlement/preview", json=body)
        try:
            return SettlementCompletePayload.model_validate(data)
        except ValidationError as exc:
            raise BackendError(f"unexpected preview payload: {exc}") from exc

    async def fetch_page(self, base_key: str, page_index: int) -> list[ProvidedServiceRow]:
        try:
            data = await self._request(
                "GET", "/v1/coverages/settlement/page", params={"key": base_key, "page": page_index}
            )
        except BackendError as exc:
            raise PageFetchError(base_key, page_index, exc.message, exc.upstream_status) from exc
        try:
            return [ProvidedServicePayload.model_validate(item).to_row() for item in data or []]
        except ValidationError as exc:
            raise PageFetchError(base_key, page_index, f"unexpected page payload: {exc}") from exc

    async def create_settlement(self, request: CreateSettlementRequest) -> SettlementCompletePayload:
        body = CreateRequestPayload.from_request(request).to_wire()
        data = await self._request("POST", "/v1/coverages/settlement", json=body)
        try:
            return SettlementCompletePayload.model_validate(data)
        except ValidationError as exc:
            raise BackendError(f"unexpected settlement payload: {exc}") from exc

    async def list_settlements(
        self, insurer_id: int | None = None, date_from: date | None = None, date_to: date | None = None
    ) -> list[SettlementSummary]:
        params: dict[str, str] = {}
        if insurer_id is not None:
            params["insurerId"] = str(insurer_id)
        if date_from:
            params["dateFrom"] = date_from.isoformat()
        if date_to:
            params["dateTo"] = date_to.isoformat()
        data = await self._request("GET", "/v1/coverages/settlement", params=params)
        try:
            return [SettlementResponsePayload.model_validate(item).to_summary() for item in data or []]
        except ValidationError as exc:
            raise BackendError(f"unexpected settlement list payload: {exc}") from exc

    async def inform_settlement(
        self, settlement_id: int, informed_amount: Decimal, informed_date: date, observations: str
    ) -> SettlementSummary:
        body = InformRequestPayload(
            id=settlement_id,
            informed_amount=informed_amount,
            informed_date=informed_date,
            observations=observations,
        ).to_wire()
        data = await self._request("PUT", "/v1/coverages/settlement/inform", json=body)
        return self._summary(data)

    async def cancel_settlement(self, settlement_id: int, observations: str) -> SettlementSummary:
        body = CancelRequestPayload(id=settlement_id, observations=observations).to_wire()
        data = await self._request("PUT", "/v1/coverages/settlement/cancel", json=body)
        return self._summary(data)

    @staticmethod
    def _summary(data: Any) -> SettlementSummary:
        try:
            return SettlementResponsePayload.model_validate(data).to_summary()
        except ValidationError as exc:
            raise BackendError(f"unexpected settlement payload: {exc}") from exc
