"""History and pattern lookups over approved training data.

Read-only queries used by candidate generation. Every lookup is tolerant:
no data, or a store failure, yields an empty result and a logged warning.
"""

from collections import Counter
from decimal import Decimal
from typing import Dict, Iterable, Optional

from core.observability.logging import get_logger
from draw_matching.models import VendorHistoryEntry
from draw_matching.normalize import normalize_keywords, normalize_trade, normalize_vendor_name
from draw_matching.store import (
    TRAINING_RECORDS,
    VENDOR_ASSOCIATIONS,
    MatchingStore,
    StoreError,
)


logger = get_logger(__name__)

DEFAULT_KEYWORD_SAMPLE_LIMIT = 100


class HistoryLookup:
    """Queries vendor, trade and keyword history.

    Usage:
        lookup = HistoryLookup(store)
        history = await lookup.get_vendor_history("ACME Lumber Co.")
        # {"Framing": VendorHistoryEntry(match_count=4, total_amount=...)}
    """

    def __init__(self, store: MatchingStore, keyword_sample_limit: int = DEFAULT_KEYWORD_SAMPLE_LIMIT):
        self.store = store
        self.keyword_sample_limit = keyword_sample_limit

    async def get_vendor_history(self, vendor_name: Optional[str]) -> Dict[str, VendorHistoryEntry]:
        """Category -> (match count, total amount) for a vendor.

        The vendor name is normalized before lookup; the "unknown" vendor has
        no history by definition.
        """
        vendor = normalize_vendor_name(vendor_name)
        if vendor == "unknown":
            return {}

        try:
            rows = await self.store.select(VENDOR_ASSOCIATIONS, {"vendor_name_normalized": vendor})
        except StoreError as e:
            logger.warning("Vendor history lookup failed", extra_fields={"vendor": vendor, "error": str(e)})
            return {}

        history = {}
        for row in rows:
            history[row["budget_category"]] = VendorHistoryEntry(
                match_count=int(row.get("match_count") or 0),
                total_amount=row.get("total_amount") or Decimal("0"),
            )
        return history

    async def get_trade_patterns(self, trade: Optional[str]) -> Dict[str, int]:
        """Category -> number of approved invoices carrying this trade."""
        trade_key = normalize_trade(trade)
        if not trade_key:
            return {}

        try:
            rows = await self.store.select(TRAINING_RECORDS, {"trade": trade_key})
        except StoreError as e:
            logger.warning("Trade pattern lookup failed", extra_fields={"trade": trade_key, "error": str(e)})
            return {}

        return dict(Counter(row["budget_category"] for row in rows if row.get("budget_category")))

    async def get_keyword_patterns(self, keywords: Iterable[str], budget_category: str) -> int:
        """Count recent approved invoices in a category sharing any keyword.

        Scans the most recent training records for the category (bounded by
        keyword_sample_limit) and counts those whose keywords intersect the
        given keywords, case-insensitively.
        """
        wanted = set(normalize_keywords(keywords))
        if not wanted or not budget_category:
            return 0

        try:
            rows = await self.store.select(
                TRAINING_RECORDS,
                {"budget_category": budget_category},
                order_by="approved_at",
                descending=True,
                limit=self.keyword_sample_limit,
            )
        except StoreError as e:
            logger.warning(
                "Keyword pattern lookup failed",
                extra_fields={"budget_category": budget_category, "error": str(e)},
            )
            return 0

        return sum(1 for row in rows if wanted & set(normalize_keywords(row.get("keywords") or [])))
