from __future__ import annotations

import csv
from io import BytesIO, StringIO
from typing import Iterable, List

from openpyxl import Workbook
from openpyxl.styles import Font

from models import StudentFeeRecord
from utils.ledger import fee_status

FEE_COLUMNS = [
    "Admission No",
    "Student",
    "Class",
    "Academic Year",
    "Fee Type",
    "Actual Fee",
    "Discount",
    "Paid",
    "Balance",
    "Due Date",
    "Status",
]


def _rows(records: Iterable[StudentFeeRecord]) -> List[list]:
    rows = []
    for r in records:
        rows.append([
            r.student.admission_number if r.student else "",
            r.student.full_name if r.student else "",
            r.school_class.label if r.school_class else "",
            r.academic_year.year_name if r.academic_year else "",
            r.fee_type,
            float(r.actual_fee or 0),
            float(r.discount_amount or 0),
            float(r.paid_amount or 0),
            float(r.balance_fee or 0),
            r.due_date.isoformat() if r.due_date else "",
            fee_status(r.balance_fee, r.paid_amount, r.due_date),
        ])
    return rows


def fee_records_csv(records: Iterable[StudentFeeRecord]) -> str:
    buf = StringIO()
    writer = csv.writer(buf)
    writer.writerow(FEE_COLUMNS)
    writer.writerows(_rows(records))
    return buf.getvalue()


def fee_records_xlsx(records: Iterable[StudentFeeRecord], title: str = "Fees") -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = title[:31]
    ws.append(FEE_COLUMNS)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    rows = _rows(records)
    for row in rows:
        ws.append(row)
    # Totals under the money columns
    if rows:
        last = len(rows) + 1
        ws.append(["", "Total", "", "", ""] + [f"=SUM({col}2:{col}{last})" for col in "FGHI"])
        for cell in ws[ws.max_row]:
            cell.font = Font(bold=True)
    ws.freeze_panes = "A2"
    out = BytesIO()
    wb.save(out)
    return out.getvalue()
