# core/promptpay.py
"""
PromptPay (EMVCo Merchant Presented QR, Thailand profile) payload encoder.

- classify_payee_id(): raw merchant/platform PromptPay id -> PayeeIdentifier
- generate_payload(): (payee id, amount) -> QR text with CRC16/CCITT-FALSE
- build_qr_png(): payload -> PNG bytes for the checkout page
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from io import BytesIO
from typing import List, Tuple, Union
import logging
import re

import qrcode

logger = logging.getLogger("promptpay")

PROMPTPAY_AID = "A000000677010111"
CURRENCY_THB = "764"
COUNTRY_TH = "TH"
MCC_UNSPECIFIED = "0000"

ID_TYPE_PHONE = "01"
ID_TYPE_NATIONAL_ID = "02"

_STRIP_RE = re.compile(r"[\s\-]+")
_NON_DIGIT_RE = re.compile(r"[^0-9]+")
_LOCAL_PHONE_RE = re.compile(r"^0[0-9]{9}$")
_INTL_PHONE_RE = re.compile(r"^66[0-9]{9}$")


class PromptPayError(ValueError):
    """Caller input that cannot be encoded. Never transient."""


class InvalidAmount(PromptPayError):
    pass


class InvalidPhoneLength(PromptPayError):
    pass


class InvalidPayeeId(PromptPayError):
    pass


@dataclass(frozen=True)
class PayeeIdentifier:
    kind: str  # "phone" | "national_id"
    code: str  # EMVCo sub-type: "01" phone, "02" national/tax id
    digits: str

    def as_tuple(self) -> Tuple[str, str]:
        return self.code, self.digits


def classify_payee_id(raw: str) -> PayeeIdentifier:
    """Normalize a free-form PromptPay id. First matching rule wins:
    +66 prefix, local 0XXXXXXXXX, bare 66XXXXXXXXX, then national/tax id.
    """
    cleaned = _STRIP_RE.sub("", raw or "")

    if cleaned.startswith("+66"):
        digits = "0" + _NON_DIGIT_RE.sub("", cleaned[3:])
        if len(digits) != 10:
            raise InvalidPhoneLength(f"phone number must have 10 digits after normalization, got {len(digits)}")
        return PayeeIdentifier("phone", ID_TYPE_PHONE, digits)

    if _LOCAL_PHONE_RE.match(cleaned):
        return PayeeIdentifier("phone", ID_TYPE_PHONE, cleaned)

    if _INTL_PHONE_RE.match(cleaned):
        return PayeeIdentifier("phone", ID_TYPE_PHONE, "0" + cleaned[2:])

    digits = _NON_DIGIT_RE.sub("", cleaned)
    if not digits:
        raise InvalidPayeeId("PromptPay id contains no digits")
    if len(digits) != 13:
        # shorter tax ids exist in the wild; keep going
        logger.warning("PromptPay national/tax id has %d digits (expected 13)", len(digits))
    return PayeeIdentifier("national_id", ID_TYPE_NATIONAL_ID, digits)


# ---------- TLV ----------

def format_length(value: str) -> str:
    """Two-digit decimal length. Values longer than 99 chars do not fit EMVCo TLV."""
    return f"{len(value):02d}"


def tlv(tag: str, value: str) -> str:
    return f"{tag}{format_length(value)}{value}"


def parse_tlv(payload: str) -> List[Tuple[str, str]]:
    """Split a flat TLV string into [(tag, value), ...] in order."""
    out: List[Tuple[str, str]] = []
    i = 0
    while i < len(payload):
        if i + 4 > len(payload):
            raise ValueError(f"truncated TLV header at offset {i}")
        tag = payload[i:i + 2]
        try:
            length = int(payload[i + 2:i + 4])
        except ValueError:
            raise ValueError(f"bad TLV length at offset {i + 2}") from None
        start = i + 4
        end = start + length
        if end > len(payload):
            raise ValueError(f"TLV value for tag {tag} overruns payload")
        out.append((tag, payload[start:end]))
        i = end
    return out


# ---------- CRC16/CCITT-FALSE ----------

def crc16_ccitt_false(data: str) -> str:
    crc = 0xFFFF
    for ch in data:
        crc ^= (ord(ch) & 0xFF) << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return f"{crc:04X}"


def verify_checksum(payload: str) -> bool:
    if len(payload) < 8 or payload[-8:-4] != "6304":
        return False
    return crc16_ccitt_false(payload[:-4]) == payload[-4:].upper()


# ---------- amount ----------

def format_amount(amount: Union[int, float, Decimal, str]) -> str:
    """Serialize THB amount with exactly two decimals, rounding half-up.
    Raises InvalidAmount for non-positive, non-finite or non-numeric input.
    """
    if isinstance(amount, bool):
        raise InvalidAmount("amount must be a number")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"amount is not a number: {amount!r}") from None
    if not value.is_finite() or value <= 0:
        raise InvalidAmount(f"amount must be greater than zero: {amount!r}")
    cents = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if cents <= 0:
        raise InvalidAmount(f"amount rounds to zero: {amount!r}")
    return f"{cents:.2f}"


# ---------- payload ----------

def merchant_account_block(payee: PayeeIdentifier) -> str:
    return tlv("00", PROMPTPAY_AID) + tlv("01", payee.code + payee.digits)


def generate_payload(payee_id: str, amount: Union[int, float, Decimal, str]) -> str:
    """
    Build the PromptPay QR text for one (payee, amount) pair.
    Tag order 00, 01, 29, 52, 53, 54, 58, 63 is fixed; scanners read left to right.
    """
    amount_str = format_amount(amount)
    payee = classify_payee_id(payee_id)

    body = (
        tlv("00", "01")
        + tlv("01", "12")
        + tlv("29", merchant_account_block(payee))
        + tlv("52", MCC_UNSPECIFIED)
        + tlv("53", CURRENCY_THB)
        + tlv("54", amount_str)
        + tlv("58", COUNTRY_TH)
        + "6304"
    )
    payload = body + crc16_ccitt_false(body)
    logger.debug("promptpay payload kind=%s amount=%s payload=%s", payee.kind, amount_str, payload)
    return payload


def build_qr_png(payload: str, box_size: int = 8) -> bytes:
    qr = qrcode.QRCode(box_size=box_size, border=2)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    bio = BytesIO()
    img.save(bio, format="PNG")
    return bio.getvalue()
