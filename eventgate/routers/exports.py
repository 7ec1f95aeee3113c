from __future__ import annotations

import csv
import io
from datetime import date
from typing import Iterable, Optional, List

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..deps import ADMIN_ACTOR, client_ip, get_db, require_token
from ..models import AuditAction, AuditLog, Registration
from ..utils import format_datetime, format_phone_number


router = APIRouter(prefix="/api", tags=["exports"], dependencies=[Depends(require_token)])

REGISTRATION_FIELDS = [
    "ID",
    "Full Name",
    "Company",
    "Phone Number",
    "Status",
    "Registered At",
    "Checked In At",
    "Note",
]


def _stream_csv(rows: Iterable[dict], filename: str, header_fields: Optional[List[str]] = None) -> StreamingResponse:
    buffer = io.StringIO()
    row_iter = iter(rows)
    first_row = next(row_iter, None)
    if header_fields is not None:
        fieldnames = header_fields
    elif first_row is not None:
        fieldnames = list(first_row.keys())
    else:
        fieldnames = []
    writer = csv.DictWriter(buffer, fieldnames=fieldnames, quoting=csv.QUOTE_ALL)
    writer.writeheader()
    if first_row is not None:
        writer.writerow(first_row)
    for row in row_iter:
        writer.writerow(row)
    buffer.seek(0)
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return StreamingResponse(iter([buffer.getvalue()]), media_type="text/csv", headers=headers)


@router.get("/export.registrations.csv")
def export_registrations(request: Request, db: Session = Depends(get_db)):
    items = db.execute(select(Registration).order_by(Registration.created_at.desc())).scalars().all()
    rows = [
        {
            "ID": r.id,
            "Full Name": r.full_name,
            "Company": r.company_name,
            "Phone Number": format_phone_number(r.phone_number),
            "Status": "Checked In" if r.attendance else "Pending",
            "Registered At": format_datetime(r.created_at),
            "Checked In At": format_datetime(r.checked_in_at),
            "Note": r.note or "-",
        }
        for r in items
    ]

    db.add(
        AuditLog(
            action=AuditAction.EXPORT.value,
            actor=ADMIN_ACTOR,
            ip_address=client_ip(request),
            details={"format": "csv", "count": len(rows)},
        )
    )
    db.commit()

    return _stream_csv(rows, f"registrations-{date.today().isoformat()}.csv", header_fields=REGISTRATION_FIELDS)
