from __future__ import annotations

import datetime as dt
import hashlib
from pathlib import Path
from typing import Dict, Iterable, List

from fastapi import HTTPException, status
from openpyxl import Workbook
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.units import cm
from reportlab.pdfgen import canvas
from sqlalchemy.orm import Session

from .config import LOCAL_TZ, settings
from .middleware import Identity
from .models import ExportRecord, IntervalSettlement, MacroTask
from .utils import local_day_bounds, minutes_to_hours, now_utc, optional_utc, to_decimal

EXPORT_FORMATS = {"pdf", "xlsx"}

COLUMNS = [
    "Task",
    "Opened",
    "Closed",
    "Hours",
    "Billable (h)",
    "Rate",
    "Retainer (h)",
    "Direct amount",
    "Retainer amount",
    "Earnings",
]


def _local(value: dt.datetime) -> str:
    return optional_utc(value).astimezone(LOCAL_TZ).strftime("%Y-%m-%d %H:%M")


def collect_rows(db: Session, identity: Identity, start_day: dt.date, end_day: dt.date) -> List[List[str]]:
    start, end = local_day_bounds(start_day, end_day, LOCAL_TZ)
    settlements = (
        db.query(IntervalSettlement)
        .filter(
            IntervalSettlement.user_id == identity.user_id,
            IntervalSettlement.closed_at >= start,
            IntervalSettlement.closed_at < end,
        )
        .order_by(IntervalSettlement.closed_at.asc(), IntervalSettlement.id.asc())
        .all()
    )
    task_ids = {row.macro_task_id for row in settlements}
    titles: Dict[int, str] = {}
    if task_ids:
        titles = {task.id: task.title for task in db.query(MacroTask).filter(MacroTask.id.in_(task_ids))}
    rows = []
    for row in settlements:
        rows.append(
            [
                titles.get(row.macro_task_id, f"#{row.macro_task_id} (deleted)"),
                _local(row.opened_at),
                _local(row.closed_at),
                str(minutes_to_hours(row.elapsed_minutes)),
                str(minutes_to_hours(row.billable_minutes)),
                f"{to_decimal(row.hourly_rate):.2f}",
                str(minutes_to_hours(row.retainer_minutes)),
                f"{to_decimal(row.direct_amount):.2f}",
                f"{to_decimal(row.retainer_amount):.2f}",
                f"{to_decimal(row.earnings):.2f}",
            ]
        )
    return rows


def _write_pdf(path: Path, title: str, rows: Iterable[List[str]], total: str) -> None:
    pagesize = landscape(A4)
    pdf = canvas.Canvas(str(path), pagesize=pagesize)
    width, height = pagesize
    y = height - 2 * cm
    pdf.setTitle(title)
    pdf.setFont("Helvetica-Bold", 16)
    pdf.drawString(2 * cm, y, title)
    y -= 1 * cm
    pdf.setFont("Helvetica-Bold", 9)
    pdf.drawString(2 * cm, y, " | ".join(COLUMNS))
    y -= 0.7 * cm
    pdf.setFont("Helvetica", 9)
    for row in rows:
        pdf.drawString(2 * cm, y, " | ".join(row))
        y -= 0.6 * cm
        if y < 2 * cm:
            pdf.showPage()
            y = height - 2 * cm
            pdf.setFont("Helvetica", 9)
    pdf.setFont("Helvetica-Bold", 11)
    pdf.drawString(2 * cm, max(y - 0.4 * cm, 1 * cm), f"Total earnings: {total}")
    pdf.save()


def _write_xlsx(path: Path, rows: Iterable[List[str]], total: str) -> None:
    wb = Workbook()
    ws = wb.active
    ws.title = "Timesheet"
    ws.append(COLUMNS)
    for row in rows:
        ws.append(row)
    ws.append([])
    ws.append(["Total earnings", total])
    wb.save(path)


def _checksum_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            digest.update(chunk)
    return digest.hexdigest()


def export_timesheet(
    db: Session,
    identity: Identity,
    export_format: str,
    start_day: dt.date,
    end_day: dt.date,
    currency: str,
) -> ExportRecord:
    if export_format not in EXPORT_FORMATS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported export format")
    if end_day < start_day:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="End date precedes start date")

    rows = collect_rows(db, identity, start_day, end_day)
    total = f"{sum((to_decimal(row[-1]) for row in rows), to_decimal(0)):.2f} {currency}"
    safe_user = "".join(char if char.isalnum() else "_" for char in identity.user_id)
    filename = f"timesheet_{safe_user}_{start_day}_{end_day}_{int(now_utc().timestamp())}.{export_format}"
    path = settings.export_dir / filename
    path.parent.mkdir(parents=True, exist_ok=True)

    if export_format == "pdf":
        _write_pdf(path, f"Timesheet {identity.user_id} {start_day} - {end_day}", rows, total)
    else:
        _write_xlsx(path, rows, total)

    export = ExportRecord(
        user_id=identity.user_id,
        format=export_format,
        range_start=start_day,
        range_end=end_day,
        path=str(path),
        checksum=_checksum_file(path),
    )
    db.add(export)
    db.commit()
    db.refresh(export)
    return export


def get_export(db: Session, identity: Identity, export_id: int) -> ExportRecord:
    export = db.get(ExportRecord, export_id)
    if export is None or export.user_id != identity.user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Export not found")
    if not Path(export.path).exists():
        raise HTTPException(status_code=status.HTTP_410_GONE, detail="Export file no longer exists")
    return export
