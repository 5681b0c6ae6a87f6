"""HTTP client for the remote language model and embedding service."""

import json
import logging

import httpx

logger = logging.getLogger(__name__)


class AIError(Exception):
    """Raised when the model service is unreachable or returns an unusable response."""


class AIClient:
    """Calls models hosted behind a ``POST {base_url}/run/{model}`` endpoint.

    ``run`` returns a dict with a ``response`` string for text generation.
    Responses wrapped in a ``{"result": ...}`` envelope are unwrapped.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str | None = None,
        embedding_model: str = "@cf/baai/bge-base-en-v1.5",
        timeout: float = 30.0,
        max_retries: int = 1,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.embedding_model = embedding_model
        self.max_retries = max_retries
        headers = {"Content-Type": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._client = httpx.Client(
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def run(self, model: str, payload: dict) -> dict:
        """Run a model and return its result payload."""
        result = self._post(f"{self.base_url}/run/{model}", payload)
        if not isinstance(result, dict):
            raise AIError(f"Unexpected response from {model}: {type(result).__name__}")
        response = result.get("response")
        if response is not None and not isinstance(response, str):
            text = json.dumps(response) if isinstance(response, (dict, list)) else str(response)
            result = {**result, "response": text}
        return result

    def embed(self, text: str) -> list[float]:
        """Embed a single text with the configured embedding model."""
        result = self._post(f"{self.base_url}/run/{self.embedding_model}", {"text": [text]})
        try:
            vector = result["data"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise AIError("Embedding response missing data") from e
        return [float(v) for v in vector]

    def close(self):
        self._client.close()

    def _post(self, url: str, payload: dict):
        last_error: Exception | None = None
        for attempt in range(1, self.max_retries + 2):
            try:
                response = self._client.post(url, json=payload)
                response.raise_for_status()
                body = response.json()
            except httpx.HTTPStatusError as e:
                last_error = e
                if e.response.status_code < 500:
                    break
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = e
            except ValueError as e:
                raise AIError(f"Non-JSON response from {url}") from e
            else:
                if isinstance(body, dict) and "result" in body:
                    if body.get("success") is False:
                        raise AIError(f"Model service reported failure: {body.get('errors')}")
                    return body["result"]
                return body
            logger.warning("AI request to %s failed (attempt %s): %s", url, attempt, last_error)
        raise AIError(f"AI request failed: {last_error}") from last_error
