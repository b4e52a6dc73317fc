"""Request payload parsing and field rules shared by the blueprints."""
from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Mapping, Optional

from utils.errors import ValidationFailed
from utils.security import sanitize_input

EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
PHONE_RE = re.compile(r"^\+?[0-9 ()-]{7,20}$")
CENT = Decimal("0.01")


def is_valid_email(value: str | None) -> bool:
    return bool(value and EMAIL_RE.match(value.strip()))


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def parse_date(value: Any, field: str = "date", required: bool = False) -> Optional[date]:
    if value in (None, ""):
        if required:
            raise ValidationFailed(f"{field} is required", {field: "required"})
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()
    except ValueError:
        raise ValidationFailed(f"{field} must be a YYYY-MM-DD date", {field: "invalid date"})


def parse_amount(value: Any, field: str = "amount", required: bool = True,
                 positive: bool = True) -> Optional[Decimal]:
    if value in (None, ""):
        if required:
            raise ValidationFailed(f"{field} is required", {field: "required"})
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationFailed(f"{field} must be a number", {field: "not a number"})
    if not amount.is_finite():
        raise ValidationFailed(f"{field} must be a number", {field: "not a number"})
    if positive and amount <= 0:
        raise ValidationFailed(f"{field} must be greater than 0", {field: "must be greater than 0"})
    if not positive and amount < 0:
        raise ValidationFailed(f"{field} cannot be negative", {field: "cannot be negative"})
    return amount


def parse_int(value: Any, field: str, required: bool = True) -> Optional[int]:
    if value in (None, ""):
        if required:
            raise ValidationFailed(f"{field} is required", {field: "required"})
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{field} must be an integer", {field: "not an integer"})


def require_fields(payload: Mapping[str, Any], fields: Iterable[str]) -> None:
    errors = {
        name: "required"
        for name in fields
        if payload.get(name) is None or (isinstance(payload.get(name), str) and not payload.get(name).strip())
    }
    if errors:
        raise ValidationFailed("Missing required fields: " + ", ".join(errors), errors)


def require_choice(value: Any, choices: Iterable[str], field: str) -> str:
    choices = tuple(choices)
    if value not in choices:
        raise ValidationFailed(
            f"{field} must be one of: {', '.join(choices)}", {field: "invalid choice"}
        )
    return value


def clean_text(payload: Mapping[str, Any], fields: Iterable[str]) -> Dict[str, str]:
    """Sanitized copies of the string fields present in ``payload``."""
    return {name: sanitize_input(payload[name]) for name in fields if payload.get(name) is not None}


def validate_payment(amount: Any, balance: Decimal, receipt_number: str | None,
                     payment_receiver: str | None) -> Decimal:
    """Rules for a payment form; returns the amount rounded to cents.

    A blank receipt number counts as not given.
    """
    errors: Dict[str, str] = {}
    parsed: Optional[Decimal] = None
    try:
        parsed = parse_amount(amount, "amount")
    except ValidationFailed as exc:
        errors.update(exc.errors)
    if parsed is not None:
        parsed = parsed.quantize(CENT, rounding=ROUND_HALF_UP)
        if parsed <= 0:
            errors["amount"] = "must be at least 0.01"
        elif parsed > balance:
            errors["amount"] = f"Payment amount cannot exceed outstanding balance of {balance:.2f}"
    if receipt_number and 0 < len(receipt_number.strip()) < 3:
        errors["receipt_number"] = "Receipt number must be at least 3 characters"
    if not isinstance(payment_receiver, str) or not payment_receiver.strip():
        errors["payment_receiver"] = "Payment receiver is required"
    if errors:
        raise ValidationFailed("Invalid payment", errors)
    return parsed
