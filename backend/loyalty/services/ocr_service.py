"""Receipt OCR adapter.

The points pipeline only needs three facts from a receipt image: the
merchant name, the grand total and its currency.  ``OcrAdapter`` is the
contract the pipeline depends on; ``OpenAIReceiptOcr`` is the default
implementation, which sends the preprocessed image to a vision-capable
OpenAI model and asks for JSON matching ``ExtractedData``.

Any failure (image missing, model unavailable, unparseable output) is
raised as ``OcrFailure``.  Timeouts are applied by the caller so that
every adapter is bounded the same way.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from textwrap import dedent
from typing import Any, Dict, Optional, Protocol

import httpx
from openai import AsyncOpenAI
from pydantic import ValidationError

from loyalty.core.config import settings
from loyalty.core.errors import OcrFailure
from loyalty.models.schemas import ExtractedData
from loyalty.services.storage_service import StorageService
from loyalty.utils.image_processing import preprocess_image

logger = logging.getLogger(__name__)


EXTRACTION_PROMPT = dedent(
    """
    You are an assistant specialised in reading retail receipts. Extract
    the business name, the grand total and the currency from the image.

    - merchantName: the name of the store or business that issued the
      receipt. Payment processors printed by card terminals (GCash,
      Maya, GlobalPayments, Visa, Mastercard, PayPal) are NOT the
      merchant; prefer the business or branch name below them. Use an
      empty string if no business name is legible.
    - totalAmount: the final amount paid (TOTAL, GRAND TOTAL, AMOUNT
      DUE), never a subtotal, tax or change line. Use null if absent.
    - currency: ISO 4217 code. Receipts showing PHP or the peso sign are
      PHP. Use {default_currency} when no currency is printed.

    Return ONLY JSON matching the schema.
    """
).strip()

EXTRACTION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "merchantName": {"type": "string"},
        "totalAmount": {"type": ["number", "null"]},
        "currency": {"type": "string"},
    },
    "required": ["merchantName", "totalAmount", "currency"],
    "additionalProperties": False,
}


class OcrAdapter(Protocol):
    async def extract(self, image_ref: str) -> ExtractedData:
        ...


class OpenAIReceiptOcr:
    """Extract receipt data with an OpenAI vision model."""

    def __init__(
        self,
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        storage: Optional[StorageService] = None,
    ) -> None:
        self.model = model or settings.OCR_MODEL
        self._client = client
        self._storage = storage

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.OPENAI_API_KEY:
                raise OcrFailure("OCR is not configured. Set OPENAI_API_KEY.")
            self._client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        return self._client

    @property
    def storage(self) -> StorageService:
        if self._storage is None:
            self._storage = StorageService()
        return self._storage

    async def load_image(self, image_ref: str) -> bytes:
        """Fetch image bytes from a URL or from object storage."""
        if image_ref.startswith(("http://", "https://")):
            async with httpx.AsyncClient(timeout=settings.OCR_TIMEOUT_SECONDS) as client:
                resp = await client.get(image_ref)
            if resp.status_code != 200:
                raise OcrFailure(f"Failed to fetch receipt image: HTTP {resp.status_code}")
            return resp.content
        try:
            return await asyncio.to_thread(self.storage.load, image_ref)
        except FileNotFoundError as e:
            raise OcrFailure("Receipt image not found in storage") from e

    async def extract(self, image_ref: str) -> ExtractedData:
        data = await self.load_image(image_ref)
        if not data:
            raise OcrFailure("Receipt image is empty")
        processed = await asyncio.to_thread(preprocess_image, data, settings.OCR_MAX_IMAGE_SIZE)
        b64 = base64.b64encode(processed).decode("utf-8")
        instructions = EXTRACTION_PROMPT.format(default_currency=settings.OCR_DEFAULT_CURRENCY)

        try:
            resp = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": instructions},
                            {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{b64}"}},
                        ],
                    }
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": "ExtractedData", "schema": EXTRACTION_SCHEMA, "strict": True},
                },
            )
        except OcrFailure:
            raise
        except Exception as exc:
            logger.warning("[ocr] model call failed model=%s err=%s", self.model, exc)
            raise OcrFailure("The receipt could not be read. Please try again with a clearer photo.") from exc

        content = resp.choices[0].message.content if resp.choices else None
        if not content:
            raise OcrFailure("The receipt could not be read. Please try again with a clearer photo.")
        return parse_extraction(content)


def parse_extraction(raw: str) -> ExtractedData:
    """Validate model output into ``ExtractedData``."""
    try:
        payload = json.loads(raw)
        extracted = ExtractedData.model_validate(payload)
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.warning("[ocr] unparseable extraction output: %s", exc)
        raise OcrFailure("The receipt could not be read. Please try again with a clearer photo.") from exc
    extracted.merchant_name = (extracted.merchant_name or "").strip()
    extracted.currency = (extracted.currency or settings.OCR_DEFAULT_CURRENCY).strip().upper()
    return extracted
