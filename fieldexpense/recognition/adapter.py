"""Normalization of recognition results into draft ledger entries."""

import datetime as dt
from collections.abc import Callable, Mapping
from typing import Any

from fieldexpense.ledger.models import (
    EntryDraft,
    ExpenseCategory,
    coerce_amount,
    match_category,
)
from fieldexpense.utils.config import RecognitionConfig
from fieldexpense.utils.logger import get_logger

from .service import RecognitionError, RecognitionService

logger = get_logger(__name__)

FALLBACK_TITLE = "Uploaded Receipt"


class RecognitionAdapter:
    """Turns a receipt image into an unverified draft entry.

    Every required ledger field is filled: missing category falls back to
    the catch-all bucket, missing currency to the organization default,
    and a missing or unparseable date to today.

    Args:
        service: External extraction collaborator.
        config: Recognition defaults.
        today: Clock used for the date default.
    """

    def __init__(
        self,
        service: RecognitionService,
        config: RecognitionConfig,
        today: Callable[[], dt.date] = dt.date.today,
    ) -> None:
        self.service = service
        self.config = config
        self.today = today
        self.default_category = match_category(
            config.default_category, ExpenseCategory.MISCELLANEOUS
        )

    async def recognize(self, image: bytes, mime_type: str) -> EntryDraft:
        """Extract a draft entry from an image.

        Args:
            image: Encoded image bytes.
            mime_type: Mime type of the image.

        Returns:
            Draft entry with all required fields populated.

        Raises:
            RecognitionError: If the image is empty or extraction fails.
        """
        if not image:
            raise RecognitionError("Empty image payload")

        try:
            raw = await self.service.extract(image, mime_type)
        except RecognitionError:
            raise
        except Exception as exc:
            logger.error("Recognition service failed: %s", exc)
            raise RecognitionError(f"Recognition failed: {exc}") from exc

        if not isinstance(raw, Mapping) or not raw:
            raise RecognitionError("Empty or malformed recognition response")

        draft = self.normalize(raw)
        logger.info(
            "Recognized %r: %s %s (%s)",
            draft.title,
            draft.currency,
            draft.amount,
            draft.category,
        )
        return draft

    def normalize(self, raw: Mapping[str, Any]) -> EntryDraft:
        """Map a raw structured response onto draft entry fields."""
        title = str(raw.get("title") or "").strip() or FALLBACK_TITLE
        currency = str(raw.get("currency") or "").strip().upper()

        return EntryDraft(
            title=title,
            date=self._parse_date(raw.get("date")),
            amount=coerce_amount(raw.get("amount")),
            currency=currency or self.config.default_currency,
            category=match_category(raw.get("category"), self.default_category),
            issuer_address=_optional_text(
                raw.get("issuerAddress", raw.get("issuer_address"))
            ),
            notes=_optional_text(raw.get("explanation")),
            verified=False,
        )

    def _parse_date(self, value: Any) -> dt.date:
        if isinstance(value, dt.date):
            return value
        text = str(value or "").strip()
        try:
            return dt.date.fromisoformat(text[:10])
        except ValueError:
            if text:
                logger.debug("Unparseable receipt date %r, using today", text)
            return self.today()


def _optional_text(value: Any) -> str | None:
    text = str(value).strip() if value is not None else ""
    return text or None
