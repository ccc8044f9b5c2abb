from __future__ import annotations

from dataclasses import dataclass

import httpx

from ingest.errors import TransientUpstreamError


@dataclass(frozen=True)
class FetchResult:
    status_code: int
    content: bytes
    elapsed_ms: int


async def fetch_payload(
    client: httpx.AsyncClient,
    *,
    url: str,
    user_agent: str,
    timeout_seconds: float,
    extra_headers: dict[str, str] | None = None,
) -> FetchResult:
    headers = {
        "User-Agent": user_agent,
        "Accept": "application/json, application/geo+json, */*",
    }
    if extra_headers:
        headers.update(extra_headers)

    timeout = httpx.Timeout(timeout_seconds, connect=min(5.0, timeout_seconds))
    try:
        response = await client.get(url, headers=headers, timeout=timeout)
    except httpx.TimeoutException as e:
        raise TransientUpstreamError(f"timeout: {e.__class__.__name__}") from e
    except httpx.RequestError as e:
        raise TransientUpstreamError(f"request_error:{e.__class__.__name__}") from e

    elapsed_ms = int(response.elapsed.total_seconds() * 1000)
    if not 200 <= response.status_code < 300:
        raise TransientUpstreamError(
            f"http_{response.status_code}", status_code=response.status_code
        )
    return FetchResult(
        status_code=response.status_code,
        content=response.content,
        elapsed_ms=elapsed_ms,
    )
