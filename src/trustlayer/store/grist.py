"""
Grist document API client implementing RecordStore over httpx.
"""

import ssl
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING, Union

import httpx

from trustlayer.core.logging import LoggerMixin
from trustlayer.security.pinning import CertificatePinningError
from trustlayer.store.base import Filter, Record, RecordStore, StoreError

if TYPE_CHECKING:
    from trustlayer.security.pinning import CertificatePinner


ApiKeySource = Union[str, Callable[[], str]]


def _find_certificate_error(exc: BaseException) -> Optional[ssl.SSLCertVerificationError]:
    """httpx wraps handshake failures; dig the verification error out of the chain"""
    seen = set()
    found: Optional[ssl.SSLCertVerificationError] = None
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, CertificatePinningError):
            return current
        if found is None and isinstance(current, ssl.SSLCertVerificationError):
            found = current
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return found


class GristRecordStore(RecordStore, LoggerMixin):
    """
    Records live under {base_url}/api/docs/{doc_id}/tables/{table}/records.

    The API key may be given as a callable so that a rotated key is picked up
    on the next request without rebuilding the client.
    """

    def __init__(
        self,
        base_url: str,
        doc_id: str,
        api_key: ApiKeySource,
        timeout: float = 30.0,
        pinner: Optional["CertificatePinner"] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.doc_id = doc_id
        self._api_key = api_key
        self._pinner = pinner

        verify: Any = pinner.create_ssl_context() if pinner is not None else True
        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}/api/docs/{doc_id}",
            timeout=timeout,
            verify=verify,
            transport=transport,
        )

    @property
    def api_key(self) -> str:
        return self._api_key() if callable(self._api_key) else self._api_key

    async def list(
        self,
        table: str,
        filter: Optional[Filter] = None,
        sort: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        params: Dict[str, Any] = {}
        if filter:
            params["filter"] = filter.to_expression()
        if sort:
            params["sort"] = sort
        if limit is not None:
            params["limit"] = limit

        payload = await self._request("GET", table, params=params)
        return [
            Record(id=int(item["id"]), fields=item.get("fields") or {})
            for item in payload.get("records", [])
        ]

    async def create(self, table: str, fields: Dict[str, Any]) -> int:
        payload = await self._request("POST", table, json={"records": [{"fields": fields}]})
        try:
            return int(payload["records"][0]["id"])
        except (KeyError, IndexError, TypeError, ValueError):
            raise StoreError(f"Unexpected create response for {table}: {payload!r}")

    async def update(self, table: str, record_id: int, fields: Dict[str, Any]) -> None:
        await self._request(
            "PATCH", table, json={"records": [{"id": record_id, "fields": fields}]}
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"/tables/{table}/records"
        try:
            response = await self._client.request(
                method,
                url,
                params=params,
                json=json,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            certificate_error = _find_certificate_error(e)
            if certificate_error is not None and self._pinner is not None:
                if not isinstance(certificate_error, CertificatePinningError):
                    certificate_error = self._pinner.reject_verification(
                        self._client.base_url.host, certificate_error
                    )
                await self._pinner.report_pending_failures()
                raise certificate_error from e
            if isinstance(certificate_error, CertificatePinningError):
                raise certificate_error from e
            self.logger.warning(f"{method} {table} failed: {e}")
            raise StoreError(f"{method} {table} failed: {e}") from e

        if not response.is_success:
            raise StoreError(
                f"{method} {table} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise StoreError(f"{method} {table} returned invalid JSON: {e}") from e
