"""Payment-proof classification of CRM attachments with a vision model."""

import base64
import io
import json
import re
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import pypdfium2 as pdfium
from pypdf import PdfReader

from app.config import settings
from app.logging_config import get_logger
from app.services.llm import LLMProvider, LLMProviderError, OpenAIProvider, image_part, text_part
from app.services.retry import RetryPolicy, call_with_retry

logger = get_logger("vision_service")

CONFIDENCE_LEVELS = ("high", "medium", "low")
PDF_TEXT_LIMIT = 4000
# 72 dpi base, so 2.0 renders at 144 dpi
PDF_RENDER_SCALE = 2.0
JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

PROOF_PROMPT = """Look at this attachment and decide whether it is proof of a completed payment: a bank transfer, a deposit, or a receipt of a financial transaction.

Answer ONLY with this exact JSON:
{
  "is_proof": true/false,
  "confidence": "high"/"medium"/"low",
  "reason": "short explanation",
  "amount": number or null
}

"amount" is the main transaction amount as a plain number without currency symbol
(look for "Importe", "Monto", "Total", "Transferiste", "Le pagaste"). Ignore fees and balances.
Use null when the amount cannot be read.

It IS a proof only when it shows a specific COMPLETED transaction with concrete data,
at least an amount plus a success status or a reference/receipt number:
- a completed bank transfer screen ("Transferiste", "Enviaste", "Operacion realizada", "Comprobante")
- a Mercado Pago, PayPal or other payment app receipt of a finished operation
- an ATM or deposit slip with operation details
- a crypto wallet screen showing a SENT transaction

It is NOT a proof (reject these):
- banking app home screens or screens that only show the available balance
- lists of movements or history without one transaction opened
- screens with "Transferir", "Pagar", "Ingresar" buttons
- chat screenshots, selfies, personal photos, memes
- product pictures
- any non-financial document"""


class ExtractionError(Exception):
    pass


@dataclass(frozen=True)
class AttachmentClassification:
    is_proof: bool
    confidence: str
    reason: str
    amount: Optional[float] = None


def fail_open(reason: str) -> AttachmentClassification:
    return AttachmentClassification(is_proof=True, confidence="low", reason=reason)


def fail_closed(reason: str) -> AttachmentClassification:
    return AttachmentClassification(is_proof=False, confidence="low", reason=reason)


def is_pdf(name: str, content_type: Optional[str] = None) -> bool:
    return (name or "").lower().endswith(".pdf") or "application/pdf" in (content_type or "").lower()


def _parse_amount(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    cleaned = re.sub(r"[^\d,.\-]", "", str(value))
    # "1.234,56" -> "1234.56"
    if "," in cleaned and "." in cleaned:
        cleaned = cleaned.replace(".", "").replace(",", ".")
    else:
        cleaned = cleaned.replace(",", ".")
    try:
        amount = float(cleaned)
    except ValueError:
        return None
    return amount if amount > 0 else None


def parse_classification(text: str) -> Optional[AttachmentClassification]:
    """Pull the JSON object out of a model answer. None if it can't be read."""
    match = JSON_OBJECT.search(text or "")
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    is_proof = data.get("is_proof", data.get("isPaymentProof"))
    if not isinstance(is_proof, bool):
        return None

    confidence = str(data.get("confidence", "low")).lower()
    if confidence not in CONFIDENCE_LEVELS:
        confidence = "low"

    return AttachmentClassification(
        is_proof=is_proof,
        confidence=confidence,
        reason=str(data.get("reason") or ""),
        amount=_parse_amount(data.get("amount", data.get("monto"))),
    )


def render_first_page(data: bytes) -> bytes:
    """PNG render of page 1."""
    document = pdfium.PdfDocument(data)
    try:
        if len(document) == 0:
            raise ExtractionError("PDF has no pages")
        image = document[0].render(scale=PDF_RENDER_SCALE).to_pil()
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        return buffer.getvalue()
    finally:
        document.close()


def pdf_content_parts(data: bytes) -> list[dict]:
    """First-page text of a PDF, or a render of the first page when it has no text layer.

    Raises ExtractionError for files that cannot be read at all.
    """
    try:
        reader = PdfReader(io.BytesIO(data))
        if not reader.pages:
            raise ExtractionError("PDF has no pages")

        text = (reader.pages[0].extract_text() or "").strip()
        if text:
            return [text_part(f"Document text (first page):\n{text[:PDF_TEXT_LIMIT]}")]

        rendered = render_first_page(data)
    except ExtractionError:
        raise
    except Exception as e:
        raise ExtractionError(f"Unreadable PDF: {e}") from e

    encoded = base64.b64encode(rendered).decode("ascii")
    return [image_part(f"data:image/png;base64,{encoded}")]


class VisionClassifier:
    """Classify an attachment URL. Never raises."""

    def __init__(
        self,
        provider: Optional[LLMProvider],
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.provider = provider
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.vision_retry_attempts,
            delay_seconds=settings.vision_retry_delay_seconds,
        )
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self.transport = transport

    def _download(self, url: str) -> httpx.Response:
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport, follow_redirects=True) as client:
                response = client.get(url)
        except httpx.HTTPError as e:
            raise ExtractionError(f"Download failed: {e}") from e
        if not response.is_success:
            raise ExtractionError(f"Download failed: {response.status_code}")
        return response

    def _content_parts(self, url: str, name: str) -> list[dict]:
        response = self._download(url)
        content_type = response.headers.get("content-type", "")
        if is_pdf(name, content_type):
            return pdf_content_parts(response.content)
        mime_type = content_type.split(";")[0].strip() or "image/jpeg"
        encoded = base64.b64encode(response.content).decode("ascii")
        return [image_part(f"data:{mime_type};base64,{encoded}")]

    def classify(self, url: str, name: str) -> AttachmentClassification:
        log_context = {"file_name": name, "url": url}
        if self.provider is None:
            logger.warning("Vision API key not configured, classification skipped", extra={"context": log_context})
            return fail_open("skipped")

        try:
            parts = self._content_parts(url, name)
        except ExtractionError as e:
            logger.warning(f"Attachment extraction failed: {e}", extra={"context": log_context})
            return fail_closed("extraction failed")

        messages = [{"role": "user", "content": [text_part(PROOF_PROMPT), *parts]}]
        try:
            response = call_with_retry(
                lambda: self.provider.generate(messages, temperature=0.1, max_tokens=256),
                self.retry_policy,
                retry_on=(LLMProviderError, httpx.HTTPError),
                operation="vision.classify",
            )
        except (LLMProviderError, httpx.HTTPError) as e:
            logger.error(f"Vision provider unavailable: {e}", extra={"context": log_context})
            return fail_open("provider unavailable")

        result = parse_classification(response.content)
        if result is None:
            logger.error(
                "Could not parse vision answer",
                extra={"context": {**log_context, "answer": response.content[:300]}},
            )
            return fail_open("unparseable answer")

        logger.info(
            "Attachment classified",
            extra={"context": {**log_context, "is_proof": result.is_proof, "confidence": result.confidence}},
        )
        return result


def get_vision_classifier() -> VisionClassifier:
    provider = None
    if settings.openai_api_key:
        provider = OpenAIProvider(api_key=settings.openai_api_key, default_model=settings.vision_model)
    return VisionClassifier(provider)
