"""In-process notifications between the ledger, promotion and reporting code.

Senders pass the Flask app as ``sender``; keyword payloads are listed per signal.
"""
from __future__ import annotations

import logging

from blinker import Namespace
from flask import current_app

from utils.audit import log_event

logger = logging.getLogger(__name__)

_signals = Namespace()

#: payment=FeePaymentRecord, allocations=list[dict]
payment_recorded = _signals.signal("payment-recorded")
#: payment=FeePaymentRecord, reversal=PaymentReversal
payment_reversed = _signals.signal("payment-reversed")
#: result=dict, target_year_id=int
promotion_completed = _signals.signal("promotion-completed")
#: year=AcademicYear
academic_year_changed = _signals.signal("academic-year-changed")
#: year_id=int; rows were created, discounted, blocked or removed
fee_records_changed = _signals.signal("fee-records-changed")


def emit(signal, **payload) -> None:
    signal.send(current_app._get_current_object(), **payload)


@payment_recorded.connect
def _audit_payment(sender, payment=None, allocations=None, **_):
    logger.info("payment %s recorded for student %s", payment.receipt_number, payment.student_id)
    log_event(
        "payment_recorded",
        target=f"student:{payment.student_id}",
        detail=f"{payment.receipt_number} {payment.amount_paid} across {len(allocations or [])} record(s)",
    )


@payment_reversed.connect
def _audit_reversal(sender, payment=None, reversal=None, **_):
    log_event(
        "payment_reversed",
        target=f"payment:{payment.id}",
        detail=f"{reversal.reversal_type} {reversal.reversal_amount}: {reversal.reason}",
    )


@promotion_completed.connect
def _audit_promotion(sender, result=None, target_year_id=None, **_):
    log_event(
        "promotion_completed",
        target=f"academic_year:{target_year_id}",
        detail=result.get("message") if result else None,
    )


@academic_year_changed.connect
def _audit_year_change(sender, year=None, **_):
    log_event("academic_year_changed", target=f"academic_year:{year.id}", detail=year.year_name)
