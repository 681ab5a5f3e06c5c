"""Checkout field rules.

These are the only copy of the rules: the checkout form may run them
early to save a round trip, but order placement always runs them again.
"""

import re
from typing import List, Optional

PHONE_RE = re.compile(r"^\+?[1-9]\d{1,14}$")
PHONE_NOISE_RE = re.compile(r"[\s\-()]")

ADDRESS_MIN = 10
ADDRESS_MAX = 500
NOTES_MAX = 1000
PAYMENT_METHODS = ("cash", "online")


def normalize_phone(phone: str) -> str:
    return PHONE_NOISE_RE.sub("", phone)


def validate_address(address: Optional[str]) -> bool:
    if not address:
        return False
    return ADDRESS_MIN <= len(address.strip()) <= ADDRESS_MAX


def validate_phone(phone: Optional[str]) -> bool:
    if not phone:
        return False
    return bool(PHONE_RE.match(normalize_phone(phone)))


def validate_notes(notes: Optional[str]) -> bool:
    if not notes:
        return True
    return len(notes) <= NOTES_MAX


def validate_payment_method(method: Optional[str]) -> bool:
    return method in PAYMENT_METHODS


def validate_checkout(address, phone, notes, payment_method) -> List[str]:
    """Return every violated field rule, in form order."""
    errors = []
    if not validate_address(address):
        errors.append(f"Address must be between {ADDRESS_MIN} and {ADDRESS_MAX} characters")
    if not validate_phone(phone):
        errors.append("Invalid phone number format")
    if not validate_notes(notes):
        errors.append(f"Notes must be less than {NOTES_MAX} characters")
    if not validate_payment_method(payment_method):
        errors.append("Invalid payment method")
    return errors
