# services/extraction/normalize.py
from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from services.extraction.doc_types import DocumentType


Fields = Dict[str, Any]

ADDRESS_KEYS = ("house", "street", "locality", "city", "state", "pincode")

# States and union territories, longest first so "Andhra Pradesh" wins over shorter overlaps.
INDIAN_REGIONS: List[str] = sorted(
    [
        "Andaman and Nicobar Islands",
        "Andhra Pradesh",
        "Arunachal Pradesh",
        "Assam",
        "Bihar",
        "Chandigarh",
        "Chhattisgarh",
        "Dadra and Nagar Haveli and Daman and Diu",
        "Delhi",
        "Goa",
        "Gujarat",
        "Haryana",
        "Himachal Pradesh",
        "Jammu and Kashmir",
        "Jharkhand",
        "Karnataka",
        "Kerala",
        "Ladakh",
        "Lakshadweep",
        "Madhya Pradesh",
        "Maharashtra",
        "Manipur",
        "Meghalaya",
        "Mizoram",
        "Nagaland",
        "Odisha",
        "Puducherry",
        "Punjab",
        "Rajasthan",
        "Sikkim",
        "Tamil Nadu",
        "Telangana",
        "Tripura",
        "Uttar Pradesh",
        "Uttarakhand",
        "West Bengal",
    ],
    key=len,
    reverse=True,
)
_CANONICAL_REGION = {r.lower(): r for r in INDIAN_REGIONS}

_DIGITS_RE = re.compile(r"\d+")
_NON_LETTERS_RE = re.compile(r"[^A-Za-z]+")
_PINCODE_RE = re.compile(r"(?<!\d)(\d{6})(?!\d)")
_TRAILING_PINCODE_RE = re.compile(r"\s*-?\s*(?<!\d)\d{6}(?!\d)\s*$")
_STATE_RE = re.compile(
    r"\b(" + "|".join(re.escape(r) for r in INDIAN_REGIONS) + r")\b",
    re.IGNORECASE,
)
_DMY_RE = re.compile(r"^(\d{2})[/-](\d{2})[/-](\d{4})$")
_ISO_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_CAMEL_RE = re.compile(r"(?<=[a-z0-9])([A-Z])")

_KEY_ALIASES = {
    "aadhar_number": "aadhaar_number",
    "aadhaar_no": "aadhaar_number",
    "uid": "aadhaar_number",
    "pan": "pan_number",
    "pan_no": "pan_number",
    "dob": "date_of_birth",
    "birth_date": "date_of_birth",
    "holder_name": "name",
    "full_name": "name",
    "fathers_name": "father_name",
    "mobile": "mobile_number",
}


def _safe_str(x: Any) -> str:
    if x is None:
        return ""
    if isinstance(x, str):
        return x.strip()
    return str(x).strip()


def _collapse_spaces(s: str) -> str:
    return " ".join(s.split())


def canonical_key(field_name: str) -> str:
    k = _CAMEL_RE.sub(r"_\1", _safe_str(field_name)).lower().replace("-", "_").replace(" ", "_")
    return _KEY_ALIASES.get(k, k)


# --- addresses ---------------------------------------------------------------


def _strip_pincode(s: str) -> str:
    return _TRAILING_PINCODE_RE.sub("", s).strip()


def parse_address(raw: Any) -> Dict[str, str]:
    """
    Best-effort split of a one-line Indian address.

    Example:
      "Mahadeo Mandir Chauk, Morane Pr. Laling, Morane-laling, Dhule, Dhule, Maharashtra - 424002"
      -> house="Mahadeo Mandir Chauk", street="Morane Pr. Laling", locality="Morane-laling",
         city="Dhule", state="Maharashtra", pincode="424002"

    Never raises; unparseable text ends up in `locality`.
    """
    out = {k: "" for k in ADDRESS_KEYS}
    s = _collapse_spaces(_safe_str(raw))
    if not s:
        return out

    pins = _PINCODE_RE.findall(s)
    if pins:
        out["pincode"] = pins[-1]

    states = list(_STATE_RE.finditer(s))
    state_token = states[-1].group(1) if states else ""
    if state_token:
        out["state"] = _CANONICAL_REGION.get(state_token.lower(), state_token)

    parts = [p.strip() for p in s.split(",") if p.strip()]

    if len(parts) >= 4:
        out["house"] = parts[0]
        out["street"] = parts[1]
        out["locality"] = parts[2]
        state_idx = -1
        if state_token:
            for i, p in enumerate(parts):
                if state_token.lower() in p.lower():
                    state_idx = i
        if state_idx > 0:
            out["city"] = _strip_pincode(parts[state_idx - 1])
        else:
            out["city"] = _strip_pincode(parts[-2])
    elif len(parts) == 3:
        out["locality"] = parts[0]
        out["city"] = parts[1]
    elif len(parts) == 2:
        out["locality"] = parts[0]
        out["city"] = _strip_pincode(parts[1])
    else:
        rest = _PINCODE_RE.sub(" ", s)
        if state_token:
            rest = re.sub(re.escape(state_token), " ", rest, flags=re.IGNORECASE)
        out["locality"] = _collapse_spaces(rest).strip(" ,-")

    return out


# --- dates -------------------------------------------------------------------


def convert_date(raw: Any) -> str:
    """
    DD/MM/YYYY or DD-MM-YYYY -> YYYY-MM-DD. ISO input is returned unchanged,
    anything else is returned as-is (callers treat that as unparseable).
    """
    s = _safe_str(raw)
    m = _DMY_RE.match(s)
    if m:
        dd, mm, yyyy = m.groups()
        return f"{yyyy}-{mm}-{dd}"
    return s


def is_iso_date(s: str) -> bool:
    return bool(_ISO_RE.match(s or ""))


def repair_dob(v: Any, allow_two_digit_year: bool = False) -> Optional[str]:
    """
    Repairs common OCR damage to a date of birth into DD/MM/YYYY.

    Handles:
      - 'DD/MM/YYYY', 'DD-MM-YYYY', 'DD.MM.YYYY'
      - 'DDMMYYYY'
      - 'DD/MMYYYY'  (e.g., 15/082001)
      - 'DDMM/YYYY'  (e.g., 0108/1973)
      - 'DDMMYY'     (only when allow_two_digit_year; 30+ -> 19xx)

    Returns None if there is not enough information (e.g., year-only).
    """
    s = _safe_str(v)
    if not s:
        return None

    m = re.fullmatch(r"(\d{2})[-./](\d{2})[-./](\d{4})", s)
    if m:
        return f"{m.group(1)}/{m.group(2)}/{m.group(3)}"

    m = re.fullmatch(r"(\d{2})/(\d{6})", s)
    if m:
        return f"{m.group(1)}/{m.group(2)[:2]}/{m.group(2)[2:]}"

    m = re.fullmatch(r"(\d{4})/(\d{4})", s)
    if m:
        return f"{m.group(1)[:2]}/{m.group(1)[2:]}/{m.group(2)}"

    digits = "".join(_DIGITS_RE.findall(s))
    if len(digits) == 8 and len(digits) == len(re.sub(r"\s", "", s)):
        return f"{digits[:2]}/{digits[2:4]}/{digits[4:]}"

    if allow_two_digit_year and len(digits) == 6 and digits == s:
        yy = digits[4:]
        yyyy = f"19{yy}" if int(yy) >= 30 else f"20{yy}"
        return f"{digits[:2]}/{digits[2:4]}/{yyyy}"

    return None


def normalize_date_of_birth(v: Any, allow_two_digit_year: bool = False) -> str:
    s = _safe_str(v)
    if is_iso_date(s):
        return s
    repaired = repair_dob(s, allow_two_digit_year=allow_two_digit_year)
    return convert_date(repaired if repaired is not None else s)


# --- identity numbers / enums --------------------------------------------------


def normalize_aadhaar_number(v: Any, pad_left_if_short: bool = True) -> Optional[str]:
    """
    Attempts to convert:
      - 'XXXX XXXX XXXX' -> 'XXXXXXXXXXXX'
      - '9.387e+10' (scientific notation) -> digits (optionally left-pad to 12)

    Returns None if no safe normalization found.
    """
    s = _safe_str(v)
    if not s:
        return None

    digits = "".join(_DIGITS_RE.findall(s))
    if len(digits) == 12:
        return digits

    if any(ch in s.lower() for ch in ("e", ".")):
        try:
            d = Decimal(s)
        except InvalidOperation:
            return None
        if not d.is_finite() or d < 0 or d != d.to_integral_value():
            return None
        # more than 12 integer digits can never be an Aadhaar number
        if d.adjusted() > 11:
            return None
        as_int = str(int(d))
        if len(as_int) == 12:
            return as_int
        if pad_left_if_short and len(as_int) < 12:
            return as_int.zfill(12)
        return None

    # Leading zero dropped by OCR.
    if pad_left_if_short and len(digits) == 11:
        return digits.zfill(12)

    return None


def normalize_pan_number(v: Any) -> str:
    return "".join(_safe_str(v).split()).upper()


def normalize_gender(v: Any) -> Optional[str]:
    """Maps OCR variants ('I MALE', 'Femaie', 'M') to MALE / FEMALE / OTHER."""
    s = _safe_str(v)
    if not s:
        return None

    letters = _NON_LETTERS_RE.sub("", s).upper()

    if letters in ("IMALE", "LMALE"):
        letters = "MALE"
    if letters in ("FEMAIE", "FEMALF", "FEMALC"):
        letters = "FEMALE"

    if "FEMALE" in letters or letters.startswith("FEM") or letters == "F":
        return "FEMALE"
    if "MALE" in letters or letters.startswith("MAL") or letters == "M":
        return "MALE"
    if letters in ("OTHER", "OTH", "T", "TRANSGENDER"):
        return "OTHER"

    return None


def normalize_name(v: Any) -> str:
    return _collapse_spaces(_safe_str(v).replace("_", " "))


# --- per-document normalization ---------------------------------------------------


def _to_flat(raw: Any) -> Fields:
    """Accepts {k: v} or the detector shape {k: {"value": v, "det_conf": .., ...}}."""
    flat: Fields = {}
    if not isinstance(raw, dict):
        return flat
    for k, v in raw.items():
        value = v.get("value") if isinstance(v, dict) and "value" in v else v
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        flat[canonical_key(k)] = value
    return flat


def _normalize_common(fields: Fields) -> None:
    for key in ("name", "father_name"):
        if key in fields:
            fields[key] = normalize_name(fields[key])


def _normalize_aadhaar(fields: Fields) -> None:
    if "aadhaar_number" in fields:
        nv = normalize_aadhaar_number(fields["aadhaar_number"])
        fields["aadhaar_number"] = nv if nv is not None else _safe_str(fields["aadhaar_number"])

    if "date_of_birth" in fields:
        fields["date_of_birth"] = normalize_date_of_birth(fields["date_of_birth"])

    if "gender" in fields:
        nv = normalize_gender(fields["gender"])
        fields["gender"] = nv if nv is not None else _safe_str(fields["gender"])

    address = fields.get("address")
    if isinstance(address, str):
        fields["address_raw"] = _collapse_spaces(address)
        fields["address"] = parse_address(address)


def _normalize_pan(fields: Fields) -> None:
    if "pan_number" in fields:
        fields["pan_number"] = normalize_pan_number(fields["pan_number"])

    if "date_of_birth" in fields:
        fields["date_of_birth"] = normalize_date_of_birth(fields["date_of_birth"], allow_two_digit_year=True)


_NORMALIZERS: Dict[DocumentType, Callable[[Fields], None]] = {
    DocumentType.AADHAAR: _normalize_aadhaar,
    DocumentType.PAN: _normalize_pan,
}


def normalize_fields(raw: Any, document_type: DocumentType) -> Fields:
    """
    Canonical, flat field dict for one document. Keys are snake_case
    (`date_of_birth`, `aadhaar_number`, ...), dates are ISO, Aadhaar
    addresses are split with `parse_address`.

    Returns a new dict; the input is never mutated.
    """
    fields = _to_flat(raw)
    for k, v in list(fields.items()):
        if isinstance(v, str):
            fields[k] = v.strip()
    _normalize_common(fields)
    _NORMALIZERS[DocumentType.parse(document_type)](fields)
    return fields
