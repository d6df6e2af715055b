from __future__ import annotations

import io
import json
import types

import pytest
from PIL import Image

from loyalty.core.errors import OcrFailure
from loyalty.services.ocr_service import EXTRACTION_SCHEMA, OpenAIReceiptOcr, parse_extraction
from loyalty.services.storage_service import StorageService
from loyalty.utils.image_processing import preprocess_image


def _png(width=40, height=20) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color=(255, 255, 255)).save(buf, format="PNG")
    return buf.getvalue()


def test_filesystem_storage_load_and_delete(tmp_path):
    (tmp_path / "cust").mkdir()
    (tmp_path / "cust" / "r.jpg").write_bytes(b"img")
    storage = StorageService(backend="filesystem", base_dir=str(tmp_path))

    assert storage.load("cust/r.jpg") == b"img"
    assert storage.delete("cust/r.jpg") is True
    assert storage.delete("cust/r.jpg") is False
    with pytest.raises(FileNotFoundError):
        storage.load("cust/r.jpg")


def test_storage_rejects_keys_outside_base_dir(tmp_path):
    storage = StorageService(backend="filesystem", base_dir=str(tmp_path))
    with pytest.raises(ValueError):
        storage.get_full_path("../secrets.txt")


def test_preprocess_image_outputs_small_grayscale_jpeg():
    out = preprocess_image(_png(3200, 800), max_size=1600)
    with Image.open(io.BytesIO(out)) as img:
        assert img.format == "JPEG"
        assert img.mode == "L"
        assert img.size == (1600, 400)


def test_preprocess_image_passes_through_non_images():
    assert preprocess_image(b"not an image") == b"not an image"


def test_parse_extraction_normalises_fields():
    data = parse_extraction(json.dumps({"merchantName": "  Jollibee Naga ", "totalAmount": 450, "currency": "php"}))
    assert data.merchant_name == "Jollibee Naga"
    assert data.total_amount == 450.0
    assert data.currency == "PHP"


@pytest.mark.parametrize("raw", ["not json", json.dumps({"merchantName": ["x"]}), json.dumps({"totalAmount": "lots"})])
def test_parse_extraction_rejects_bad_output(raw):
    with pytest.raises(OcrFailure):
        parse_extraction(raw)


def test_schema_requires_all_fields():
    assert set(EXTRACTION_SCHEMA["required"]) == {"merchantName", "totalAmount", "currency"}


def _fake_openai(content, calls):
    async def create(**kwargs):
        calls.append(kwargs)
        message = types.SimpleNamespace(content=content)
        return types.SimpleNamespace(choices=[types.SimpleNamespace(message=message)])

    return types.SimpleNamespace(chat=types.SimpleNamespace(completions=types.SimpleNamespace(create=create)))


@pytest.mark.asyncio
async def test_openai_ocr_extracts_from_storage():
    calls = []
    storage = types.SimpleNamespace(load=lambda key: _png())
    client = _fake_openai(json.dumps({"merchantName": "SHELL", "totalAmount": 1250.5, "currency": "PHP"}), calls)
    ocr = OpenAIReceiptOcr(model="gpt-test", client=client, storage=storage)

    data = await ocr.extract("cust/r.jpg")

    assert data.merchant_name == "SHELL"
    assert data.total_amount == 1250.5
    assert calls[0]["model"] == "gpt-test"
    image_part = calls[0]["messages"][0]["content"][1]
    assert image_part["image_url"]["url"].startswith("data:image/jpeg;base64,")
    assert calls[0]["response_format"]["json_schema"]["strict"] is True


@pytest.mark.asyncio
async def test_openai_ocr_missing_image_is_ocr_failure():
    def missing(key):
        raise FileNotFoundError(key)

    ocr = OpenAIReceiptOcr(client=_fake_openai("{}", []), storage=types.SimpleNamespace(load=missing))
    with pytest.raises(OcrFailure):
        await ocr.extract("cust/missing.jpg")


@pytest.mark.asyncio
async def test_openai_ocr_model_error_is_ocr_failure():
    async def create(**kwargs):
        raise RuntimeError("upstream 503")

    client = types.SimpleNamespace(chat=types.SimpleNamespace(completions=types.SimpleNamespace(create=create)))
    ocr = OpenAIReceiptOcr(client=client, storage=types.SimpleNamespace(load=lambda key: _png()))
    with pytest.raises(OcrFailure):
        await ocr.extract("cust/r.jpg")


def test_openai_ocr_requires_api_key(monkeypatch):
    from loyalty.core.config import settings

    monkeypatch.setattr(settings, "OPENAI_API_KEY", None)
    with pytest.raises(OcrFailure):
        OpenAIReceiptOcr().client


def test_extracted_data_currency_defaults_to_configured_currency(monkeypatch):
    from loyalty.core.config import settings
    from loyalty.models.schemas import ExtractedData

    monkeypatch.setattr(settings, "OCR_DEFAULT_CURRENCY", "USD")
    assert ExtractedData(merchant_name="Shell", total_amount=10).currency == "USD"
    assert ExtractedData(currency="PHP").currency == "PHP"
