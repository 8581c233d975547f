"""Multipart date strings: ``YYYY-MM-DD <original text>``.

Unknown parts are zero-filled, so ``"Spring 2005"`` is stored as
``"2005-00-00 Spring 2005"`` and an unparseable date as
``"0000-00-00 <text>"``.
"""

from __future__ import annotations

import re

_MULTIPART = re.compile(r"^\d{4}-\d{2}-\d{2} ")
_ISO = re.compile(r"^\s*(\d{4})(?:[-/.](\d{1,2})(?:[-/.](\d{1,2}))?)?(?!\d)")
_YEAR = re.compile(r"(?<!\d)([12]\d{3})(?!\d)")
_MONTHS = (
    "jan", "feb", "mar", "apr", "may", "jun",
    "jul", "aug", "sep", "oct", "nov", "dec",
)
_MONTH_NAME = re.compile(r"\b(" + "|".join(_MONTHS) + r")[a-z]*\.?", re.IGNORECASE)


def is_multipart(value: str) -> bool:
    return bool(value) and bool(_MULTIPART.match(value))


def str_to_multipart(value: str) -> str:
    """Convert free-form date text to multipart form."""
    if not value:
        return ""
    if is_multipart(value):
        return value

    year = month = day = 0
    iso = _ISO.match(value)
    if iso:
        year = int(iso.group(1))
        month = int(iso.group(2) or 0)
        day = int(iso.group(3) or 0)
        if month > 12 or day > 31:
            month = day = 0
    else:
        found = _YEAR.search(value)
        if found:
            year = int(found.group(1))
        named = _MONTH_NAME.search(value)
        if named:
            month = _MONTHS.index(named.group(1).lower()) + 1

    return f"{year:04d}-{month:02d}-{day:02d} {value}"


def multipart_to_sql(value: str) -> str:
    """Return the ``YYYY-MM-DD`` half of a multipart date."""
    if not value:
        return ""
    if not is_multipart(value):
        return "0000-00-00"
    return value[:10]


def multipart_to_str(value: str) -> str:
    """Return the original text half of a multipart date."""
    if not is_multipart(value):
        return value
    return value[11:]
