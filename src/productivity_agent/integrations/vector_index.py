"""HTTP client for the remote semantic vector index."""

import httpx


class VectorIndexError(Exception):
    """Raised when a vector index operation fails."""


class VectorIndex:
    def __init__(
        self,
        base_url: str,
        api_token: str | None = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._client = httpx.Client(
            headers=headers, timeout=httpx.Timeout(timeout), transport=transport
        )

    def upsert(self, vectors: list[dict]) -> dict:
        """Insert or replace ``{id, values, metadata}`` records."""
        return self._post("upsert", {"vectors": vectors})

    def query(self, vector: list[float], top_k: int = 10, filter: dict | None = None) -> dict:
        """Nearest-neighbour query. Returns ``{"matches": [...]}``."""
        payload = {"vector": vector, "topK": top_k, "returnMetadata": True}
        if filter:
            payload["filter"] = filter
        result = self._post("query", payload)
        return {"matches": result.get("matches", []) if isinstance(result, dict) else []}

    def delete_by_ids(self, ids: list[str]) -> dict:
        return self._post("delete_by_ids", {"ids": ids})

    def close(self):
        self._client.close()

    def _post(self, path: str, payload: dict):
        try:
            response = self._client.post(f"{self.base_url}/{path}", json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise VectorIndexError(f"vector index {path} failed: {e}") from e
        except ValueError as e:
            raise VectorIndexError(f"vector index {path} returned non-JSON") from e
        if isinstance(body, dict) and "result" in body:
            return body["result"] or {}
        return body
