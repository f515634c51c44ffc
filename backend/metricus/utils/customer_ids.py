"""Google Ads customer id helpers.

WHAT:
    Normalizes customer ids to digits only and masks them for logs.
WHY:
    Users paste ids as `123-456-7890`; the API and our cache keys use
    `1234567890`. Full account ids are sensitive and never logged in clear.
"""

import re

# ASCII only: `\D` would keep other scripts' decimal digits
_NON_DIGITS = re.compile(r"[^0-9]")

# Ten-digit ids, dashed or not, that are not part of a longer number
_EMBEDDED_ID = re.compile(r"(?<![0-9])[0-9]{3}-?[0-9]{3}-?[0-9]{4}(?![0-9])")


def sanitize_customer_id(customer_id) -> str:
    """Strip everything except ASCII digits. Idempotent; None becomes ""."""
    if customer_id is None:
        return ""
    return _NON_DIGITS.sub("", str(customer_id))


def mask_customer_id(customer_id) -> str:
    """Return `first3***last3` for log output.

    Ids with six digits or fewer are masked entirely.
    """
    digits = sanitize_customer_id(customer_id)
    if len(digits) <= 6:
        return "***"
    return f"{digits[:3]}***{digits[-3:]}"


def redact_customer_ids(text) -> str:
    """Mask every customer id embedded in free text (exception messages, URLs)."""
    if text is None:
        return ""
    return _EMBEDDED_ID.sub(lambda match: mask_customer_id(match.group(0)), str(text))
