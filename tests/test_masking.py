"""Tests for log masking helpers."""
from app.utils.masking import mask_phone, mask_reference


def test_mask_phone_keeps_last_three_digits():
    assert mask_phone("254712345678") == "***678"
    assert mask_phone("+254 712 345 678") == "***678"


def test_mask_phone_handles_empty_values():
    assert mask_phone(None) == "***"
    assert mask_phone("") == "***"


def test_mask_reference():
    assert mask_reference("NLJ7RT61SV") == "***61SV"
    assert mask_reference("ABC") == "***"
    assert mask_reference(None) is None
