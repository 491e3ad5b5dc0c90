import re
from datetime import date, datetime
from typing import Optional


PORTAL_NAME_PREFIX = re.compile(r"^(MHC|AVIVA|SINGLIFE|AIA|AIACLIENT)\s*[-:|]+\s*", re.I)
SEARCH_TAG_PREFIX = re.compile(r"^(TAG|AVIVA|SINGLIFE|MHC|AIA|AIACLIENT|GE|IHP|FULLERT|ALLIANZ|ALLIMED)\s*[-:|]+\s*", re.I)
PAY_TYPE_ALIASES = {
    "AIA CLIENT": "AIACLIENT",
    "AIA-CLIENT": "AIACLIENT",
    "ALLIANCE": "ALLIMED",
    "ALLIANCE MEDINET": "ALLIMED",
    "FULLERTON": "FULLERT",
}


def normalize_name(name: Optional[str]) -> str:
    """Uppercase, drop a portal prefix and collapse punctuation to spaces."""
    if not name:
        return ""
    upper = str(name).upper().strip()
    upper = PORTAL_NAME_PREFIX.sub("", upper)
    return re.sub(r"[^A-Z0-9]+", " ", upper).strip()


def names_match(left: Optional[str], right: Optional[str]) -> bool:
    a, b = normalize_name(left), normalize_name(right)
    if not a or not b:
        return False
    return a == b or a in b or b in a


def normalize_patient_name_for_search(name: Optional[str]) -> str:
    if not name:
        return ""
    cleaned = SEARCH_TAG_PREFIX.sub("", str(name).strip())
    return re.sub(r"\s+", " ", cleaned).strip()


def normalize_nric(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    cleaned = re.sub(r"[\s/\-]+", "", str(value)).upper()
    return cleaned or None


def normalize_pcno(value) -> Optional[str]:
    """Patient numbers are 4+ digits; anything else is not a usable key."""
    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    return digits if len(digits) >= 4 else None


def normalize_pay_type(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    upper = re.sub(r"\s+", " ", str(value).strip().upper())
    return PAY_TYPE_ALIASES.get(upper, upper.replace(" ", ""))


def parse_portal_date(value: Optional[str]) -> Optional[date]:
    """Parse dd/mm/yyyy, d/m/yyyy or ISO dates as shown in the portals."""
    if not value:
        return None
    text = str(value).strip()
    for fmt in ("%d/%m/%Y", "%Y-%m-%d", "%d-%m-%Y", "%d %b %Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def format_portal_date(value: date, zero_pad: bool = True) -> str:
    if zero_pad:
        return value.strftime("%d/%m/%Y")
    return f"{value.day}/{value.month}/{value.year}"
