# survey_editor/tools/attachments.py
from __future__ import annotations

import asyncio
import io
import json
from dataclasses import dataclass
from pathlib import PurePath
from typing import List, Optional, Protocol, Sequence

import httpx
import pandas as pd

from survey_editor.app.errors import AttachmentError, NoExtractableText
from survey_editor.app.logging import get_logger
from survey_editor.workflows.state import Attachment

logger = get_logger(__name__)

DEFAULT_MAX_CHARS = 50_000
TRUNCATION_MARKER = "\n\n[... truncated ...]"

TEXT_SUFFIXES = {".txt", ".md", ".markdown", ".html", ".htm", ".xml", ".yaml", ".yml", ".log", ".rtf"}
TABLE_SUFFIXES = {".csv": ",", ".tsv": "\t"}
EXCEL_SUFFIXES = {".xlsx", ".xls"}


@dataclass(frozen=True)
class Upload:
    name: str
    data: bytes
    content_type: Optional[str] = None


@dataclass(frozen=True)
class ExtractedText:
    name: str
    text: str
    truncated: bool = False


def truncate_text(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def _finish(name: str, text: str, max_chars: int) -> ExtractedText:
    if not text.strip():
        raise NoExtractableText(f"No extractable text in {name}")
    return ExtractedText(name=name, text=truncate_text(text, max_chars), truncated=len(text) > max_chars)


class TextExtractor(Protocol):
    async def extract(self, upload: Upload) -> ExtractedText: ...


class LocalTextExtractor:
    """
    In-process extractor for text-like files.

    Tables (CSV/TSV/Excel) go through pandas and come back as plain text
    tables, JSON is pretty-printed, and everything else must decode as UTF-8.
    """

    def __init__(self, max_chars: int = DEFAULT_MAX_CHARS):
        self.max_chars = max_chars

    async def extract(self, upload: Upload) -> ExtractedText:
        return await asyncio.to_thread(self.extract_sync, upload)

    def extract_sync(self, upload: Upload) -> ExtractedText:
        suffix = PurePath(upload.name).suffix.lower()

        if suffix in TABLE_SUFFIXES:
            text = self._read_table(upload, TABLE_SUFFIXES[suffix])
        elif suffix in EXCEL_SUFFIXES:
            text = self._read_excel(upload)
        elif suffix == ".json":
            text = self._read_json(upload)
        else:
            text = self._read_text(upload, strict=suffix not in TEXT_SUFFIXES)

        return _finish(upload.name, text, self.max_chars)

    def _read_table(self, upload: Upload, sep: str) -> str:
        try:
            df = pd.read_csv(io.BytesIO(upload.data), sep=sep)
        except pd.errors.EmptyDataError as e:
            raise NoExtractableText(f"No extractable text in {upload.name}") from e
        except Exception as e:
            raise AttachmentError(f"Failed to read table {upload.name}: {e}") from e
        return df.to_string(index=False)

    def _read_excel(self, upload: Upload) -> str:
        try:
            sheets = pd.read_excel(io.BytesIO(upload.data), sheet_name=None)
        except Exception as e:
            raise AttachmentError(f"Failed to read Excel {upload.name}: {e}") from e
        parts = []
        for sheet_name, df in sheets.items():
            if df.empty:
                continue
            parts.append(f"## Sheet: {sheet_name}\n{df.to_string(index=False)}")
        return "\n\n".join(parts)

    def _read_json(self, upload: Upload) -> str:
        try:
            obj = json.loads(upload.data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise AttachmentError(f"Failed to read JSON {upload.name}: {e}") from e
        return json.dumps(obj, ensure_ascii=False, indent=2)

    def _read_text(self, upload: Upload, strict: bool) -> str:
        try:
            return upload.data.decode("utf-8", errors="strict" if strict else "replace")
        except UnicodeDecodeError as e:
            raise AttachmentError(f"Unsupported file type: {upload.name}") from e


class HttpTextExtractor:
    """Remote extractor: POSTs the file, expects `{"name", "text"}` back."""

    def __init__(
        self,
        url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        max_chars: int = DEFAULT_MAX_CHARS,
    ):
        self.url = url
        self.http_client = http_client
        self.timeout = timeout
        self.max_chars = max_chars

    async def extract(self, upload: Upload) -> ExtractedText:
        files = {"file": (upload.name, upload.data, upload.content_type or "application/octet-stream")}
        try:
            if self.http_client is not None:
                response = await self.http_client.post(self.url, files=files, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, files=files)
        except httpx.HTTPError as e:
            raise AttachmentError(f"Extractor request failed for {upload.name}: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code != 200:
            detail = body.get("error") if isinstance(body, dict) else None
            raise AttachmentError(detail or f"Extractor returned HTTP {response.status_code} for {upload.name}")
        if not isinstance(body, dict):
            raise AttachmentError(f"Extractor returned an unexpected payload for {upload.name}")

        return _finish(upload.name, str(body.get("text") or ""), self.max_chars)


async def extract_all(extractor: TextExtractor, uploads: Sequence[Upload]) -> List[Attachment]:
    """
    Extract every upload concurrently and wait for all of them.

    A failing file becomes an Attachment with `error` set; it never stops
    the others.
    """
    async def one(upload: Upload) -> Attachment:
        try:
            result = await extractor.extract(upload)
        except AttachmentError as e:
            logger.warning("Attachment extraction failed", extra={"attachment": upload.name, "error": str(e)})
            return Attachment(name=upload.name, error=str(e))
        return Attachment(name=upload.name, text=result.text)

    return list(await asyncio.gather(*(one(u) for u in uploads)))
