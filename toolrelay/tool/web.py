from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import requests

from .utils.content_chunker import ContentChunk, split_content

logger = logging.getLogger(__name__)

FETCH_TIMEOUT_SECONDS = 60


class WebTools:
    """Fetches web pages for the model, one chunk at a time.

    A page too large for one tool result is split into chunks. The first
    call returns an overview, later calls with ``chunkIndex`` read the
    chunks from the cache without fetching the page again.
    """

    def __init__(self, timeout: float = FETCH_TIMEOUT_SECONDS) -> None:
        self.timeout = timeout
        self._chunks: Dict[str, List[ContentChunk]] = {}

    def _request(self, url: str, options: Dict[str, Any]) -> str:
        response = requests.request(
            options.get("method") or "GET",
            url,
            headers=options.get("headers") or None,
            data=options.get("body"),
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.text

    async def fetch_website(self, url: str, options: Optional[Dict[str, Any]] = None) -> str:
        options = options or {}
        chunk_index = options.get("chunkIndex")

        chunks = self._chunks.get(url) if chunk_index else None
        if chunks is None:
            logger.info("Fetching %s", url)
            text = await asyncio.to_thread(self._request, url, options)
            chunks = split_content(text, url, cleaning=bool(options.get("cleaning")))
            self._chunks[url] = chunks

        if not chunks:
            return f"No content found at {url}"

        if not chunk_index:
            if len(chunks) == 1:
                return chunks[0].content
            return (
                f"Content of {url} is split into {len(chunks)} chunks. "
                f"Call fetchWebsite again with options.chunkIndex from 1 to {len(chunks)} "
                "to read each chunk."
            )

        index = int(chunk_index)
        if not 1 <= index <= len(chunks):
            raise ValueError(
                f"Invalid chunk index {index} for {url}: expected 1 to {len(chunks)}"
            )
        chunk = chunks[index - 1]
        return f"Chunk {chunk.index}/{chunk.total} of {url}:\n\n{chunk.content}"
