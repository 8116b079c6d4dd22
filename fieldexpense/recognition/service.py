"""Receipt field extraction through an AI vision model.

The service sends the image together with a strict JSON schema and
returns the decoded structured response. Normalization into ledger
fields happens in the recognition adapter.
"""

import base64
import json
import os
from typing import Any, Protocol

from openai import AsyncOpenAI, OpenAIError

from fieldexpense.ledger.models import ExpenseCategory
from fieldexpense.utils.config import RecognitionConfig
from fieldexpense.utils.logger import get_logger

logger = get_logger(__name__)

EXTRACTION_PROMPT = (
    "Extract the details from this receipt for an expense liquidation report. "
    "Identify the merchant name, transaction date, total amount, currency "
    "(usually PHP), and the most appropriate category. "
    "Return the data strictly in the specified JSON format."
)

RECEIPT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": {"type": "string", "description": "Merchant or store name"},
        "date": {
            "type": "string",
            "description": "Transaction date in YYYY-MM-DD format",
        },
        "amount": {"type": "number", "description": "Total amount paid"},
        "currency": {"type": "string", "description": "Currency code (e.g., PHP)"},
        "category": {
            "type": "string",
            "enum": [c.value for c in ExpenseCategory],
            "description": "Expense category",
        },
        "issuerAddress": {
            "type": ["string", "null"],
            "description": "Physical address of the store",
        },
        "explanation": {
            "type": ["string", "null"],
            "description": "Summary of items purchased",
        },
    },
    "required": [
        "title",
        "date",
        "amount",
        "currency",
        "category",
        "issuerAddress",
        "explanation",
    ],
    "additionalProperties": False,
}


class RecognitionError(RuntimeError):
    """Raised when a receipt image cannot be turned into structured fields."""


class RecognitionService(Protocol):
    """Interface of the external extraction collaborator."""

    async def extract(self, image: bytes, mime_type: str) -> dict[str, Any]: ...


class OpenAIRecognitionService:
    """Extraction collaborator backed by an OpenAI vision model.

    Args:
        config: Recognition configuration (model, API key variable, timeout).
        client: Pre-built client; created lazily from the environment if omitted.
    """

    def __init__(
        self, config: RecognitionConfig, client: AsyncOpenAI | None = None
    ) -> None:
        self.config = config
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        """Lazily initialize the API client on first use."""
        if self._client is None:
            api_key = os.getenv(self.config.api_key_env)
            if not api_key:
                raise RecognitionError(
                    f"Environment variable {self.config.api_key_env} is not set"
                )
            self._client = AsyncOpenAI(api_key=api_key, timeout=self.config.timeout_s)
        return self._client

    async def extract(self, image: bytes, mime_type: str) -> dict[str, Any]:
        """Send an image to the model and decode its structured reply.

        Args:
            image: Encoded image bytes.
            mime_type: Mime type of the image.

        Returns:
            Decoded JSON object matching ``RECEIPT_SCHEMA``.

        Raises:
            RecognitionError: On empty input, API failure, or malformed output.
        """
        if not image:
            raise RecognitionError("Empty image payload")

        data_uri = f"data:{mime_type};base64,{base64.b64encode(image).decode('ascii')}"
        try:
            response = await self._get_client().chat.completions.create(
                model=self.config.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": EXTRACTION_PROMPT},
                            {"type": "image_url", "image_url": {"url": data_uri}},
                        ],
                    }
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": "receipt",
                        "strict": True,
                        "schema": RECEIPT_SCHEMA,
                    },
                },
                temperature=0,
            )
        except OpenAIError as exc:
            logger.error("Recognition request failed: %s", exc)
            raise RecognitionError(f"Recognition request failed: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise RecognitionError("Empty response from recognition service")

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise RecognitionError(f"Malformed recognition response: {exc}") from exc

        if not isinstance(parsed, dict) or not parsed:
            raise RecognitionError("Recognition response is not a JSON object")

        logger.debug("Recognition returned fields: %s", sorted(parsed))
        return parsed
