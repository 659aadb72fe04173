"""
Merchant name normalization.

Bank statement descriptors carry payment-processor noise:

    "SQ *JOES PHARMACY 1234"  ->  "JOES PHARMACY"
    "TST* CORNER CAFE"        ->  "CORNER CAFE"

The function is total: anything it doesn't recognise comes back trimmed.
"""

import re
from typing import Optional

# Square, Toast, PayPal and Stripe-style descriptor prefixes
PROCESSOR_PREFIX = re.compile(r"^(SQ \*|TST\*|PAYPAL \*|SP \*)", re.IGNORECASE)

# Last four digits of the card, separated by whitespace
TRAILING_CARD_DIGITS = re.compile(r"\s+\d{4}$")


def normalize_merchant(raw_name: Optional[str]) -> str:
    """Recover a human merchant name from a raw transaction descriptor."""
    if not raw_name:
        return ""
    name = PROCESSOR_PREFIX.sub("", raw_name.strip())
    name = TRAILING_CARD_DIGITS.sub("", name)
    return name.strip()
