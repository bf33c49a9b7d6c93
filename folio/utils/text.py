import re
import unicodedata
from typing import Any

_WHITESPACE_RE = re.compile(r"\s+")


def is_present(value: Any) -> bool:
    """True when ``value`` is not None and not blank once stringified."""
    return value is not None and str(value).strip() != ""


def normalize_text(value: Any) -> str:
    """
    Fold a name or title into its comparison key: NFKC, lowercase, single spaces.

    Non-string values fold to an empty string.
    """
    if not isinstance(value, str):
        return ""
    folded = unicodedata.normalize("NFKC", value).lower()
    return _WHITESPACE_RE.sub(" ", folded).strip()
