from __future__ import annotations

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Dict, List

from flask import current_app
from flask_mail import Message

from extensions import mail
from models import Parent, Student, StudentFeeRecord, StudentParentLink
from utils.ledger import ZERO, money

logger = logging.getLogger(__name__)


def _reminder_body(student: Student, parent: Parent, lines: List[StudentFeeRecord], total: Decimal) -> str:
    symbol = current_app.config.get("CURRENCY_SYMBOL", "")
    school = current_app.config.get("APP_NAME", "School")
    items = "\n".join(
        f"  - {r.fee_type}: {symbol}{money(r.balance_fee):,.2f}"
        + (f" (due {r.due_date:%d %b %Y})" if r.due_date else "")
        for r in lines
    )
    return (
        f"Dear {parent.first_name},\n\n"
        f"This is a reminder that {student.full_name} ({student.admission_number}) has an outstanding "
        f"fee balance of {symbol}{total:,.2f}:\n\n{items}\n\n"
        f"Please arrange payment at the school office.\n\n{school}"
    )


def send_fee_reminders(year_id: int, class_id=None) -> Dict[str, int]:
    """Email the parents of every student with an outstanding balance in ``year_id``."""
    query = StudentFeeRecord.query.filter(
        StudentFeeRecord.academic_year_id == year_id, StudentFeeRecord.balance_fee > 0
    )
    if class_id:
        query = query.filter(StudentFeeRecord.class_id == int(class_id))
    by_student: Dict[int, List[StudentFeeRecord]] = defaultdict(list)
    for record in query.order_by(StudentFeeRecord.priority_order, StudentFeeRecord.due_date).all():
        by_student[record.student_id].append(record)

    sent = failed = skipped = 0
    subject = f"Fee reminder - {current_app.config.get('APP_NAME', 'School')}"
    for student_id, lines in by_student.items():
        student = lines[0].student
        parents = [
            link.parent
            for link in StudentParentLink.query.filter_by(student_id=student_id).all()
            if link.parent and link.parent.email
        ]
        if not parents:
            skipped += 1
            continue
        total = sum((money(r.balance_fee) for r in lines), ZERO)
        for parent in parents:
            msg = Message(
                subject=subject,
                sender=current_app.config.get("MAIL_DEFAULT_SENDER"),
                recipients=[parent.email],
                body=_reminder_body(student, parent, lines, total),
            )
            try:
                mail.send(msg)
                sent += 1
            except Exception as exc:
                failed += 1
                logger.warning("fee reminder to %s failed: %s", parent.email, exc)
    logger.info("fee reminders for year %s: sent=%d failed=%d skipped=%d", year_id, sent, failed, skipped)
    return {"sent": sent, "failed": failed, "skipped": skipped}
