"""Shared httpx helpers for provider integrations."""
import logging
from typing import Any, List

import httpx

from clipforge.errors import ProviderError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


def extract_error_detail(response: httpx.Response) -> str:
    """Extract concise error detail from a provider response."""
    try:
        payload = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:300] or f"HTTP {response.status_code}"

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            # OpenAI / Graph API style: {"error": {"message": ...}}
            message = error.get("message") or error.get("type")
            if message:
                return str(message)[:300]

        parts: List[str] = []
        if error and not isinstance(error, dict):
            parts.append(str(error))
        description = payload.get("error_description") or payload.get("err_msg") or payload.get("message")
        if description:
            parts.append(str(description))
        if parts:
            return ": ".join(parts)[:300]

    return f"HTTP {response.status_code}"


def check_response(response: httpx.Response, provider: str) -> None:
    """Raise ProviderError for non-2xx responses; 429 and 5xx are retryable."""
    if 200 <= response.status_code < 300:
        return
    detail = extract_error_detail(response)
    retryable = response.status_code in RETRYABLE_STATUS_CODES
    logger.warning(
        "%s request failed status=%s retryable=%s detail=%s",
        provider,
        response.status_code,
        retryable,
        detail,
    )
    raise ProviderError(
        f"{provider} returned {response.status_code}: {detail}",
        retryable=retryable,
        status_code=response.status_code,
    )


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    provider: str,
    **kwargs,
) -> httpx.Response:
    """Send a request, translating transport failures into ProviderError."""
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        logger.warning("%s request timed out: %s %s", provider, method, url.split("?")[0])
        raise ProviderError(f"{provider} timed out") from exc
    except httpx.RequestError as exc:
        logger.warning("%s network error: %s", provider, type(exc).__name__)
        raise ProviderError(f"Unable to reach {provider}") from exc

    check_response(response, provider)
    return response


def parse_json(response: httpx.Response, provider: str) -> Any:
    """Decode a JSON body or fail with a non-retryable ProviderError."""
    try:
        return response.json()
    except ValueError as exc:
        raise ProviderError(f"{provider} returned an invalid response", retryable=False) from exc
