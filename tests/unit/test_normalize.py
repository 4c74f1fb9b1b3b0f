from __future__ import annotations

import pytest

from services.errors import ValidationError
from services.extraction.doc_types import DocumentType
from services.extraction.normalize import (
    canonical_key,
    convert_date,
    normalize_aadhaar_number,
    normalize_fields,
    normalize_gender,
    parse_address,
    repair_dob,
)


def test_parse_address_long_form():
    a = parse_address(
        "Mahadeo Mandir Chauk, Morane Pr. Laling, Morane-laling, Dhule, Dhule, Maharashtra - 424002"
    )
    assert a["pincode"] == "424002"
    assert a["state"] == "Maharashtra"
    assert a["house"] == "Mahadeo Mandir Chauk"
    assert a["street"] == "Morane Pr. Laling"
    assert a["locality"] == "Morane-laling"
    assert a["city"] == "Dhule"


def test_parse_address_short_forms():
    three = parse_address("Shivaji Nagar, Pune, Maharashtra 411005")
    assert three["locality"] == "Shivaji Nagar"
    assert three["city"] == "Pune"
    assert three["pincode"] == "411005"

    two = parse_address("Sector 17, Chandigarh 160017")
    assert two["locality"] == "Sector 17"
    assert two["city"] == "Chandigarh"
    assert two["state"] == "Chandigarh"

    one = parse_address("Near Bus Stand Kerala 682001")
    assert one["locality"] == "Near Bus Stand"
    assert one["state"] == "Kerala"
    assert one["pincode"] == "682001"


def test_parse_address_last_pincode_wins_and_state_is_case_insensitive():
    a = parse_address("Plot 123456 Road, Ward 5, Indore, madhya pradesh 452001")
    assert a["pincode"] == "452001"
    assert a["state"] == "Madhya Pradesh"


@pytest.mark.parametrize("raw", [None, "", "   "])
def test_parse_address_empty_input(raw):
    assert parse_address(raw) == {k: "" for k in ("house", "street", "locality", "city", "state", "pincode")}


def test_convert_date():
    assert convert_date("15/08/1990") == "1990-08-15"
    assert convert_date("15-08-1990") == "1990-08-15"
    assert convert_date("1990-08-15") == "1990-08-15"
    assert convert_date(convert_date("15/08/1990")) == "1990-08-15"
    assert convert_date("Aug 1990") == "Aug 1990"
    assert convert_date(None) == ""


def test_repair_dob_ocr_damage():
    assert repair_dob("15/082001") == "15/08/2001"
    assert repair_dob("0108/1973") == "01/08/1973"
    assert repair_dob("15082001") == "15/08/2001"
    assert repair_dob("150801") is None
    assert repair_dob("150885", allow_two_digit_year=True) == "15/08/1985"
    assert repair_dob("1990") is None


def test_normalize_aadhaar_number():
    assert normalize_aadhaar_number("1234 5678 9012") == "123456789012"
    assert normalize_aadhaar_number("9.38712345678e+11") == "938712345678"
    assert normalize_aadhaar_number("12345678901") == "012345678901"
    assert normalize_aadhaar_number("12") is None
    assert normalize_aadhaar_number("1e5000") is None
    assert normalize_aadhaar_number("9.9e+12") is None
    assert normalize_aadhaar_number("-9.38712345678e+11") is None


def test_normalize_gender_variants():
    assert normalize_gender("I MALE") == "MALE"
    assert normalize_gender("Femaie") == "FEMALE"
    assert normalize_gender("F") == "FEMALE"
    assert normalize_gender("xyz") is None


def test_canonical_key_aliases():
    assert canonical_key("dateOfBirth") == "date_of_birth"
    assert canonical_key("dob") == "date_of_birth"
    assert canonical_key("aadhar_number") == "aadhaar_number"
    assert canonical_key("fatherName") == "father_name"


def test_normalize_fields_aadhaar_from_detector_shape():
    raw = {
        "aadhar_number": {"value": "1234 5678 9012", "det_conf": 0.9, "ocr_conf": 0.8},
        "name": {"value": "  Rahul   Sharma ", "det_conf": 0.9, "ocr_conf": 0.9},
        "dob": {"value": "15/08/1990"},
        "gender": {"value": "I MALE"},
        "address": {"value": "Shivaji Nagar, Pune, Maharashtra 411005"},
        "blank": {"value": "  "},
    }
    out = normalize_fields(raw, DocumentType.AADHAAR)
    assert out["aadhaar_number"] == "123456789012"
    assert out["name"] == "Rahul Sharma"
    assert out["date_of_birth"] == "1990-08-15"
    assert out["gender"] == "MALE"
    assert out["address"]["city"] == "Pune"
    assert out["address_raw"] == "Shivaji Nagar, Pune, Maharashtra 411005"
    assert "blank" not in out


def test_normalize_fields_pan_and_input_untouched():
    raw = {"pan": "abcde 1234f", "dateOfBirth": "150885", "fatherName": "Suresh  Sharma"}
    out = normalize_fields(raw, "pan")
    assert out == {"pan_number": "ABCDE1234F", "date_of_birth": "1985-08-15", "father_name": "Suresh Sharma"}
    assert raw["pan"] == "abcde 1234f"


def test_normalize_fields_is_total_on_garbage():
    assert normalize_fields(None, DocumentType.PAN) == {}
    assert normalize_fields("not a dict", DocumentType.AADHAAR) == {}


def test_document_type_parse():
    assert DocumentType.parse("Aadhar") is DocumentType.AADHAAR
    assert DocumentType.parse("PAN") is DocumentType.PAN
    with pytest.raises(ValidationError):
        DocumentType.parse("passport")
