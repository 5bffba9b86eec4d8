"""
Keyword-based transaction categorization.

A categorizer is any callable (description, amount) -> category name. The
connection manager and CSV importer accept one so it can be replaced.
"""

from decimal import Decimal
from typing import Callable, List, Optional, Tuple

Categorizer = Callable[[str, Decimal], str]

DEFAULT_CATEGORY = "other"

# Checked in order; first match wins
DEFAULT_RULES: List[Tuple[str, List[str]]] = [
    ("food", ["supermarket", "restaurant", "cafe", "takeaway", "grocery", "food", "dining"]),
    ("transport", ["petrol", "fuel", "transport", "bus", "train", "taxi", "uber", "parking"]),
    ("bills", ["electric", "gas", "water", "phone", "internet", "insurance", "council tax"]),
    ("shopping", ["amazon", "ebay", "shopping", "retail", "store", "purchase"]),
    ("entertainment", ["cinema", "theatre", "netflix", "spotify", "entertainment", "music"]),
    ("health", ["pharmacy", "doctor", "hospital", "medical", "health", "dental"]),
    ("income", ["salary", "wage", "pay", "income", "refund", "cashback"]),
]


class KeywordCategorizer:
    """Case-insensitive substring matching against ordered keyword rules."""

    def __init__(self, rules: Optional[List[Tuple[str, List[str]]]] = None, default: str = DEFAULT_CATEGORY):
        self.rules = [(category, [k.lower() for k in keywords]) for category, keywords in (rules or DEFAULT_RULES)]
        self.default = default

    def __call__(self, description: str, amount: Decimal = Decimal("0")) -> str:
        text = (description or "").lower()
        for category, keywords in self.rules:
            if any(keyword in text for keyword in keywords):
                return category
        return self.default
