"""HTTP client for the agent backend.

Wraps an :class:`aiohttp.ClientSession`. Every failure is raised as
:class:`AgentClientError` carrying the backend's ``detail``/``message``
when it sent one.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import quote

import aiohttp

from threadline.engine.config import ClientConfig
from threadline.engine.errors import AgentClientError, StreamError
from threadline.shared.models.document import HighlightRegion
from threadline.shared.models.message import Message

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 4096


async def _error_message(response: aiohttp.ClientResponse, fallback: str) -> str:
    """Extract the backend's error text from a failed response."""
    try:
        body = await response.text()
    except aiohttp.ClientError:
        return f"{fallback} (HTTP {response.status})"
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict):
        for key in ("detail", "message", "error"):
            if data.get(key):
                return str(data[key])
    return body.strip() or f"{fallback} (HTTP {response.status})"


class AgentClient:
    """Async client for the agent service's HTTP API."""

    def __init__(
        self,
        base_url: str,
        *,
        auth_token: str | None = None,
        timeout_seconds: float = 60.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth_token = auth_token
        self._timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_config(cls, config: ClientConfig) -> AgentClient:
        return cls(
            config.base_url,
            auth_token=config.auth_token,
            timeout_seconds=config.request_timeout_seconds,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def __aenter__(self) -> AgentClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_seconds),
            )
            self._owns_session = True
        return self._session

    def _headers(self) -> dict[str, str]:
        if self._auth_token:
            return {"Authorization": f"Bearer {self._auth_token}"}
        return {}

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        fallback: str,
        *,
        payload: Any = None,
        params: dict[str, Any] | None = None,
        expect: str = "json",
    ) -> Any:
        session = self._get_session()
        query = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            async with session.request(
                method,
                self._url(path),
                json=payload,
                params=query or None,
                headers=self._headers(),
            ) as response:
                if response.status >= 400:
                    message = await _error_message(response, fallback)
                    logger.warning("%s %s failed: HTTP %d %s", method, path, response.status, message)
                    raise AgentClientError(message, status=response.status)
                if expect == "bytes":
                    return await response.read()
                if expect == "none":
                    return None
                return await response.json(content_type=None)
        except AgentClientError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise AgentClientError(f"{fallback}: {exc}") from exc

    # ── conversation ─────────────────────────────────────────────

    async def get_service_info(self) -> dict[str, Any]:
        return await self._request("GET", "/info", "Failed to load service info")

    async def get_history(self, thread_id: str, user_id: str | None = None) -> list[Message]:
        data = await self._request(
            "POST", "/history", "Failed to load chat history",
            payload={"thread_id": thread_id, "user_id": user_id},
        )
        raw_messages = data.get("messages", []) if isinstance(data, dict) else []
        return [Message.from_wire(m) for m in raw_messages if isinstance(m, dict)]

    @asynccontextmanager
    async def stream(
        self,
        payload: dict[str, Any],
        agent: str | None = None,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """Open a turn stream and yield its raw byte chunks.

        The HTTP response is released when the context exits, including
        when the consumer abandons the turn midway.
        """
        endpoint = f"/{agent}/stream" if agent else "/stream"
        session = self._get_session()
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._timeout_seconds)
        try:
            response = await session.post(
                self._url(endpoint),
                json=payload,
                headers={"Content-Type": "application/json", **self._headers()},
                timeout=timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise StreamError(f"Failed to open stream: {exc}") from exc

        try:
            if response.status >= 400:
                message = await _error_message(response, "Failed to open stream")
                raise StreamError(message, status=response.status)
            logger.info("Stream opened %s thread=%s", endpoint, payload.get("thread_id"))
            yield self._iter_chunks(response)
        finally:
            response.close()

    async def _iter_chunks(self, response: aiohttp.ClientResponse) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.content.iter_chunked(STREAM_CHUNK_SIZE):
                yield chunk
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise StreamError(f"Stream interrupted: {exc}") from exc

    async def set_conversation_title(self, thread_id: str, title: str, user_id: str) -> None:
        await self._request(
            "POST", f"/conversations/{quote(thread_id, safe='')}/title",
            "Failed to set conversation title",
            params={"title": title, "user_id": user_id},
            expect="none",
        )

    async def get_conversation_title(self, thread_id: str, user_id: str) -> str:
        data = await self._request(
            "GET", f"/conversations/{quote(thread_id, safe='')}/title",
            "Failed to fetch conversation title",
            params={"user_id": user_id},
        )
        return str(data.get("title", "")) if isinstance(data, dict) else ""

    async def create_feedback(
        self,
        run_id: str,
        key: str,
        score: float,
        *,
        conversation_id: str | None = None,
        commented_message_text: str | None = None,
        kwargs: dict[str, Any] | None = None,
    ) -> None:
        await self._request(
            "POST", "/feedback", "Failed to submit feedback",
            payload={
                "run_id": run_id,
                "key": key,
                "score": score,
                "conversation_id": conversation_id,
                "commented_message_text": commented_message_text,
                "kwargs": kwargs or {},
            },
            expect="none",
        )

    # ── tool resources ───────────────────────────────────────────

    async def get_graph(self, graph_id: str) -> Any:
        return await self._request(
            "GET", f"/graph/{quote(graph_id, safe='')}", "Failed to fetch graph data",
        )

    async def get_pdf(self, document_name: str) -> bytes:
        return await self._request(
            "GET", f"/rag/pdf_content/{quote(document_name, safe='')}",
            "Failed to fetch PDF content",
            # This endpoint only accepts the token as a query parameter.
            params={"token": self._auth_token},
            expect="bytes",
        )

    async def get_annotations(
        self,
        pdf_file: str,
        block_indices: Sequence[int],
        *,
        keywords: Sequence[str] | None = None,
        user_id: str | None = None,
    ) -> list[HighlightRegion]:
        payload: dict[str, Any] = {"pdf_file": pdf_file, "block_indices": list(block_indices)}
        if keywords:
            payload["keywords"] = list(keywords)
        if user_id:
            payload["user_id"] = user_id
        data = await self._request(
            "POST", "/rag/annotations", "Failed to fetch PDF annotations", payload=payload,
        )
        return _regions(data)

    async def debug_pdf_blocks(self, pdf_file: str, *, user_id: str | None = None) -> list[HighlightRegion]:
        payload: dict[str, Any] = {"pdf_file": pdf_file}
        if user_id:
            payload["user_id"] = user_id
        data = await self._request(
            "POST", "/rag/debug_blocks", "Failed to fetch PDF debug blocks", payload=payload,
        )
        return _regions(data)


def _regions(data: Any) -> list[HighlightRegion]:
    raw = data.get("annotations", []) if isinstance(data, dict) else []
    regions: list[HighlightRegion] = []
    for item in raw:
        try:
            regions.append(HighlightRegion.from_dict(item))
        except (KeyError, TypeError, ValueError):
            logger.warning("Skipping malformed annotation: %.200r", item)
    return regions
