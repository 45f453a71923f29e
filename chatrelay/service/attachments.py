from __future__ import annotations

import asyncio
import base64
import io
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pypdf import PdfReader

from chatrelay.logging import get_logger, sanitize_error_message
from chatrelay.message_parts import text_of
from chatrelay.service.errors import AttachmentFetchError
from chatrelay.storage.models import Message

logger = get_logger(__name__)

PDF_MEDIA_TYPE = "application/pdf"
PDF_SUMMARY_PREFIX = "Please summarize the following document:\n\n"
DEFAULT_PDF_TEXT_LIMIT = 12000

ContentBlock = Dict[str, Any]
ProviderMessage = Dict[str, Any]


def extract_pdf_text(data: bytes) -> str:
    """Extract plain text from every page of a PDF."""
    reader = PdfReader(io.BytesIO(data))
    text_parts = []
    for page in reader.pages:
        text = page.extract_text()
        if text:
            text_parts.append(text)
    return "\n\n".join(text_parts)


def build_pdf_prompt(text: str, limit: int = DEFAULT_PDF_TEXT_LIMIT) -> str:
    return PDF_SUMMARY_PREFIX + text[:limit]


class AttachmentNormalizer:
    """Turns stored chat messages into provider-ready messages.

    User messages become an ordered list of content blocks: text parts pass
    through, images are inlined as base64 data URLs and PDFs are replaced by
    their (truncated) text. Other roles are flattened to plain text. An
    attachment that cannot be fetched or parsed is logged and skipped.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 20.0,
        max_bytes: int = 20 * 1024 * 1024,
        pdf_text_limit: int = DEFAULT_PDF_TEXT_LIMIT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_bytes = max_bytes
        self.pdf_text_limit = pdf_text_limit
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self.timeout_seconds, connect=min(5.0, self.timeout_seconds))
        return httpx.AsyncClient(
            timeout=timeout, follow_redirects=True, transport=self._transport
        )

    async def fetch(self, client: httpx.AsyncClient, url: str) -> bytes:
        too_large = f"attachment exceeds {self.max_bytes} bytes"
        chunks: List[bytes] = []
        try:
            async with client.stream("GET", url) as response:
                if response.status_code >= 400:
                    raise AttachmentFetchError(url, f"status {response.status_code}")
                declared = response.headers.get("content-length", "")
                if declared.isdigit() and int(declared) > self.max_bytes:
                    raise AttachmentFetchError(url, too_large)
                received = 0
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > self.max_bytes:
                        raise AttachmentFetchError(url, too_large)
                    chunks.append(chunk)
        except httpx.TimeoutException as exc:
            raise AttachmentFetchError(url, "timed out") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise AttachmentFetchError(url, str(exc)) from exc
        return b"".join(chunks)

    async def _image_block(
        self, client: httpx.AsyncClient, url: str, media_type: str
    ) -> Optional[ContentBlock]:
        try:
            data = await self.fetch(client, url)
        except AttachmentFetchError as exc:
            logger.warning(
                "attachment_skipped",
                kind="image",
                media_type=media_type,
                reason=sanitize_error_message(exc.reason),
            )
            return None
        payload = base64.b64encode(data).decode("ascii")
        return {
            "type": "image_url",
            "image_url": {"url": f"data:{media_type};base64,{payload}"},
        }

    async def _pdf_block(self, client: httpx.AsyncClient, url: str) -> Optional[ContentBlock]:
        try:
            data = await self.fetch(client, url)
        except AttachmentFetchError as exc:
            logger.warning(
                "attachment_skipped", kind="pdf", reason=sanitize_error_message(exc.reason)
            )
            return None
        try:
            # pypdf is CPU bound; keep it off the event loop
            text = await asyncio.to_thread(extract_pdf_text, data)
        except Exception as exc:
            logger.warning(
                "attachment_skipped",
                kind="pdf",
                reason="text extraction failed",
                error=sanitize_error_message(str(exc)),
            )
            return None
        if len(text) > self.pdf_text_limit:
            logger.info("pdf_text_truncated", original_chars=len(text), limit=self.pdf_text_limit)
        return {"type": "text", "text": build_pdf_prompt(text, self.pdf_text_limit)}

    async def _resolve_part(
        self, client: httpx.AsyncClient, part: Dict[str, Any]
    ) -> Optional[ContentBlock]:
        part_type = part.get("type")
        if part_type == "text":
            return {"type": "text", "text": part.get("text", "")}
        if part_type != "file":
            return None
        url = part.get("url")
        media_type = part.get("mediaType") or ""
        if not url:
            return None
        if media_type.startswith("image/"):
            return await self._image_block(client, url, media_type)
        if media_type == PDF_MEDIA_TYPE:
            return await self._pdf_block(client, url)
        logger.debug("attachment_dropped", media_type=media_type)
        return None

    async def _user_message(
        self, client: httpx.AsyncClient, message: Message
    ) -> ProviderMessage:
        # fetches for one message run concurrently; gather keeps part order
        blocks = await asyncio.gather(
            *(self._resolve_part(client, part) for part in message.parts)
        )
        return {"role": "user", "content": [b for b in blocks if b is not None]}

    async def normalize(self, messages: Sequence[Message]) -> List[ProviderMessage]:
        normalized: List[ProviderMessage] = []
        async with self._client() as client:
            for message in messages:
                if message.role == "user":
                    normalized.append(await self._user_message(client, message))
                    continue
                text = text_of(message.parts)
                if not text:
                    # tool-only messages carry no text to re-send
                    continue
                normalized.append({"role": message.role, "content": text})
        return normalized
