import logging
from typing import Any
from urllib.parse import quote

import httpx

from revisit.domain.constants import REQUEST_TIMEOUT
from revisit.domain.errors import RemoteRejected, RemoteUnavailable
from revisit.domain.models import DocumentSnapshot
from revisit.domain.ports import DocumentStore


class HttpDocumentStore(DocumentStore):
    """
    Adapter for a JSON document service over HTTP.

    Protocol:
        GET    /documents/{path}             -> 200 {"data": {...}} | 404
        PUT    /documents/{path}?merge=bool  <- {"data": {...}}
        DELETE /documents/{path}             (404 counts as deleted)
        GET    /collections/{path}           -> {"documents": [{"path", "data"}]}
    """

    def __init__(
        self,
        url: str,
        api_token: str | None = None,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.logger = logging.getLogger(__name__)
        self.url = url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._headers = {"Accept": "application/json"}
        if api_token:
            self._headers["Authorization"] = f"Bearer {api_token}"
        self._client: httpx.AsyncClient | None = None
        self.logger.debug(f"HttpDocumentStore initialized with url={self.url}")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.url,
                headers=self._headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def _request(
        self, method: str, endpoint: str, path: str, allow_missing: bool = False, **kwargs: Any
    ) -> httpx.Response | None:
        try:
            resp = await self._get_client().request(method, endpoint, **kwargs)
        except httpx.TimeoutException as e:
            raise RemoteUnavailable(f"Request timed out: {e}", path=path) from e
        except httpx.TransportError as e:
            raise RemoteUnavailable(f"Store unreachable: {e}", path=path) from e

        if resp.status_code == 404 and allow_missing:
            return None
        if resp.status_code == 429 or resp.status_code >= 500:
            raise RemoteUnavailable(f"Store returned HTTP {resp.status_code}", path=path)
        if resp.status_code >= 400:
            raise RemoteRejected(f"Store rejected request: HTTP {resp.status_code} {_detail(resp)}", path=path)
        return resp

    @staticmethod
    def _endpoint(kind: str, path: str) -> str:
        return f"/{kind}/{quote(path.strip('/'), safe='/')}"

    async def get_document(self, path: str) -> DocumentSnapshot:
        resp = await self._request("GET", self._endpoint("documents", path), path, allow_missing=True)
        if resp is None:
            return DocumentSnapshot(path=path, exists=False)
        data = _json(resp, path).get("data")
        if data is not None and not isinstance(data, dict):
            raise RemoteRejected("Document body is not an object", path=path)
        return DocumentSnapshot(path=path, exists=data is not None, data=data)

    async def set_document(self, path: str, data: dict[str, Any], merge: bool = False) -> None:
        await self._request(
            "PUT",
            self._endpoint("documents", path),
            path,
            params={"merge": "true" if merge else "false"},
            json={"data": data},
        )

    async def delete_document(self, path: str) -> None:
        await self._request("DELETE", self._endpoint("documents", path), path, allow_missing=True)

    async def list_documents(self, collection_path: str) -> list[DocumentSnapshot]:
        resp = await self._request(
            "GET", self._endpoint("collections", collection_path), collection_path, allow_missing=True
        )
        if resp is None:
            return []
        documents = _json(resp, collection_path).get("documents", [])
        return [
            DocumentSnapshot(path=doc["path"], exists=True, data=doc.get("data") or {})
            for doc in documents
            if isinstance(doc, dict) and "path" in doc
        ]

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _json(resp: httpx.Response, path: str) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError as e:
        raise RemoteRejected(f"Invalid JSON from store: {e}", path=path) from e
    if not isinstance(body, dict):
        raise RemoteRejected("Unexpected response shape from store", path=path)
    return body


def _detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or "")
    return ""
