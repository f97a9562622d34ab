"""
OCR Extraction Module

This module sends PDF documents to the OCR.space API and returns their text.
Large or long documents are split into page groups (and, if still too large,
single pages) with PyMuPDF. The outer call rotates through the configured API
keys when a key runs out of quota.
"""

import base64
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import fitz  # PyMuPDF
import requests

from utils import build_session


PROVIDER_NAME = "ocr.space"

# Message fragments that identify an exhausted request allowance
QUOTA_MARKERS = (
    'quota',
    'credit',
    'too many requests',
    '429',
    'rate limit',
    'maximum ocr requests',
)


class OCRError(Exception):
    """OCR transport failure or processing error reported by the provider"""


@dataclass
class OCROptions:
    """Per-request OCR.space options"""
    language: str = "fre"
    is_overlay_required: bool = False
    detect_orientation: bool = True
    scale: bool = True
    is_table: bool = False
    engine: int = 2

    def form_fields(self) -> dict:
        return {
            'language': self.language,
            'isOverlayRequired': str(self.is_overlay_required).lower(),
            'detectOrientation': str(self.detect_orientation).lower(),
            'scale': str(self.scale).lower(),
            'isTable': str(self.is_table).lower(),
            'OCREngine': str(self.engine),
        }


@dataclass
class OCRResult:
    text: str
    provider: str = PROVIDER_NAME
    engine: int = 2
    pages: int = 0
    calls: int = 0


def is_quota_error(error: BaseException) -> bool:
    """
    Determine if an OCR failure means the key ran out of allowance.

    Args:
        error: Exception raised by an OCR call

    Returns:
        True if another key should be tried, False otherwise
    """
    message = str(error).lower()
    return any(marker in message for marker in QUOTA_MARKERS)


class OCRSpaceClient:
    """Client for the OCR.space parse endpoint"""

    def __init__(self, endpoint: str = "https://api.ocr.space/parse/image", timeout: int = 120,
                 session: Optional[requests.Session] = None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = session or build_session("decrets-crawler/0.1")
        self.logger = logging.getLogger(__name__)

    def extract_single(self, pdf_bytes: bytes, api_key: str, options: OCROptions) -> str:
        """
        OCR one PDF in a single remote call.

        Raises:
            OCRError: On a non-2xx answer or when the provider reports a processing error
        """
        payload = base64.b64encode(pdf_bytes).decode('ascii')
        fields = {'base64Image': f"data:application/pdf;base64,{payload}"}
        fields.update(options.form_fields())

        try:
            response = self.session.post(
                self.endpoint,
                files={name: (None, value) for name, value in fields.items()},
                headers={'apikey': api_key},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise OCRError(f"OCR request failed: {e}") from e

        if not response.ok:
            raise OCRError(f"OCR HTTP {response.status_code}")

        try:
            result = response.json()
        except ValueError as e:
            raise OCRError(f"OCR returned invalid JSON: {e}") from e

        if result.get('IsErroredOnProcessing'):
            messages = result.get('ErrorMessage')
            if isinstance(messages, list) and messages:
                detail = ', '.join(str(m) for m in messages)
            elif messages:
                detail = str(messages)
            else:
                detail = result.get('ErrorDetails') or 'unknown'
            raise OCRError(f"OCR error: {detail}")

        parsed = result.get('ParsedResults') or []
        texts = [(item.get('ParsedText') or '') for item in parsed]
        return '\n\n'.join(t for t in texts if t)

    def extract_smart(self, pdf_bytes: bytes, api_key: str, options: OCROptions,
                      max_size_bytes: int, max_pages_per_call: int) -> OCRResult:
        """
        OCR a PDF, splitting it when it exceeds the size or page limits.

        Pages are sent in consecutive groups of max_pages_per_call. A group
        that is still larger than max_size_bytes is sent page by page; a
        single page over the limit is attempted anyway and replaced by a
        placeholder if the provider rejects it.
        """
        max_pages_per_call = max(1, max_pages_per_call)
        with fitz.open(stream=pdf_bytes, filetype="pdf") as source:
            page_count = source.page_count

            if len(pdf_bytes) <= max_size_bytes and page_count <= max_pages_per_call:
                text = self.extract_single(pdf_bytes, api_key, options)
                return OCRResult(text=text, engine=options.engine, pages=page_count, calls=1)

            self.logger.debug(f"Splitting {page_count} pages ({len(pdf_bytes)} bytes) "
                              f"into groups of {max_pages_per_call}")
            parts: List[str] = []
            calls = 0

            for first in range(0, page_count, max_pages_per_call):
                last = min(first + max_pages_per_call, page_count) - 1
                chunk = _copy_pages(source, first, last)

                if len(chunk) <= max_size_bytes:
                    parts.append(self.extract_single(chunk, api_key, options))
                    calls += 1
                    continue

                for page_number in range(first, last + 1):
                    single = _copy_pages(source, page_number, page_number)
                    calls += 1
                    if len(single) <= max_size_bytes:
                        parts.append(self.extract_single(single, api_key, options))
                        continue
                    try:
                        parts.append(self.extract_single(single, api_key, options))
                    except OCRError as e:
                        if is_quota_error(e):
                            raise
                        self.logger.warning(f"OCR failed on oversized page {page_number + 1}: {e}")
                        parts.append(f"[OCR failed page {page_number + 1} "
                                     f"(> {max_size_bytes // 1024} KB): {e}]")

        return OCRResult(text='\n\n'.join(parts), engine=options.engine, pages=page_count, calls=calls)

    def extract(self, pdf_bytes: bytes, api_keys: Sequence[str], options: Optional[OCROptions] = None,
                max_size_bytes: int = 1024 * 1024, max_pages_per_call: int = 3) -> OCRResult:
        """
        OCR a PDF, trying each API key in order on quota-type failures.

        Args:
            pdf_bytes: Raw PDF content
            api_keys: Keys to try, in order
            options: OCR options (defaults to French, engine 2)
            max_size_bytes: Largest payload sent in one call
            max_pages_per_call: Largest page group sent in one call

        Returns:
            OCRResult with the concatenated text

        Raises:
            OCRError: Non-quota failure (immediately) or the last quota failure
                once every key has been exhausted
        """
        options = options or OCROptions()
        if not api_keys:
            raise OCRError("OCR failure: no API keys configured")

        last_error: Optional[Exception] = None
        for position, key in enumerate(api_keys, start=1):
            try:
                return self.extract_smart(pdf_bytes, key, options, max_size_bytes, max_pages_per_call)
            except Exception as e:
                if not is_quota_error(e):
                    raise
                last_error = e
                self.logger.warning(f"OCR key {position}/{len(api_keys)} exhausted: {e}")

        raise last_error

    def close(self):
        self.session.close()


def _copy_pages(source: "fitz.Document", first: int, last: int) -> bytes:
    """Build a standalone PDF from pages first..last (0-based, inclusive)"""
    with fitz.open() as out:
        out.insert_pdf(source, from_page=first, to_page=last)
        return out.tobytes(garbage=3, deflate=True)
