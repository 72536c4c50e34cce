from __future__ import annotations

from io import BytesIO

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet
from sqlalchemy.orm import Session

from flextime.models import SettlementPeriod
from flextime.services.settlement import get_period, period_results, stored_monthly_details
from flextime.services.settlement_calc import summarize_settlements

RESULT_HEADERS = [
    "Employee ID",
    "Employee",
    "Work Days",
    "Actual Hours",
    "Weeks",
    "Weekly Average",
    "Standard Weekly",
    "Excess Hours",
    "Night Hours",
    "Allowance Hours",
    "Hourly Rate",
    "Multiplier",
    "Overtime Allowance",
    "Est. Night Allowance",
    "Status",
]

MONTHLY_HEADERS = ["Employee ID", "Employee", "Month", "Work Days", "Work Hours", "Night Hours"]

HEADER_FILL = PatternFill(fill_type="solid", fgColor="0B4F73")
META_LABEL_FILL = PatternFill(fill_type="solid", fgColor="EAF4F9")
META_VALUE_FILL = PatternFill(fill_type="solid", fgColor="F8FCFF")
ZEBRA_FILL = PatternFill(fill_type="solid", fgColor="F7FBFE")
SUCCESS_FILL = PatternFill(fill_type="solid", fgColor="E6F4EA")

HEADER_FONT = Font(bold=True, color="FFFFFF")
BOLD_FONT = Font(bold=True, color="0F172A")
TITLE_FONT = Font(bold=True, color="0B4F73", size=14)
MUTED_FONT = Font(color="334155")

THIN_SIDE = Side(style="thin", color="D5E2EC")
THIN_BORDER = Border(left=THIN_SIDE, right=THIN_SIDE, top=THIN_SIDE, bottom=THIN_SIDE)


def _style_header(ws: Worksheet, row: int = 1) -> None:
    for cell in ws[row]:
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)
        cell.border = THIN_BORDER


def _auto_width(ws: Worksheet) -> None:
    for column_cells in ws.iter_cols(min_row=1, max_row=ws.max_row, min_col=1, max_col=ws.max_column):
        max_len = 0
        col_letter = get_column_letter(column_cells[0].column)
        for cell in column_cells:
            if cell.coordinate in ws.merged_cells:
                continue
            value = "" if cell.value is None else str(cell.value)
            max_len = max(max_len, len(value))
        ws.column_dimensions[col_letter].width = min(max_len + 2, 45)


def _style_metadata_rows(ws: Worksheet, *, start_row: int, end_row: int) -> None:
    for row_idx in range(start_row, end_row + 1):
        label_cell = ws.cell(row=row_idx, column=1)
        value_cell = ws.cell(row=row_idx, column=2)
        label_cell.font = BOLD_FONT
        label_cell.fill = META_LABEL_FILL
        label_cell.border = THIN_BORDER
        value_cell.font = MUTED_FONT
        value_cell.fill = META_VALUE_FILL
        value_cell.border = THIN_BORDER


def _style_table(ws: Worksheet, *, header_row: int, highlight_col: int | None = None) -> None:
    ws.freeze_panes = f"A{header_row + 1}"
    if ws.max_row <= header_row:
        return
    ws.auto_filter.ref = f"A{header_row}:{get_column_letter(ws.max_column)}{ws.max_row}"
    for row_idx in range(header_row + 1, ws.max_row + 1):
        for col_idx in range(1, ws.max_column + 1):
            cell = ws.cell(row=row_idx, column=col_idx)
            cell.border = THIN_BORDER
            if row_idx % 2 == 0:
                cell.fill = ZEBRA_FILL
            if isinstance(cell.value, (int, float)):
                cell.alignment = Alignment(horizontal="center", vertical="center")
        if highlight_col is not None:
            cell = ws.cell(row=row_idx, column=highlight_col)
            if cell.value not in {None, 0, 0.0}:
                cell.fill = SUCCESS_FILL
                cell.font = Font(bold=True, color="166534")


def _safe_sheet_title(title: str, fallback: str) -> str:
    cleaned = "".join(ch for ch in title if ch not in ['\\', '/', '*', '?', ':', '[', ']']).strip()
    if not cleaned:
        cleaned = fallback
    return cleaned[:31]


def _build_summary_sheet(ws: Worksheet, period: SettlementPeriod, summary: dict[str, object]) -> None:
    ws.title = _safe_sheet_title(f"Summary {period.name}", "Summary")
    title = ws.cell(row=1, column=1, value=f"Settlement {period.name}")
    title.font = TITLE_FONT
    meta_rows: list[tuple[str, object]] = [
        ("Period", f"{period.start_date.isoformat()} - {period.end_date.isoformat()}"),
        ("Status", period.status.value),
        ("Completed By", period.completed_by or "-"),
        ("Employees", summary["total_employees"]),
        ("Employees With Allowance", summary["employees_with_allowance"]),
        ("Total Allowance", summary["total_allowance_amount"]),
        ("Average Weekly Hours", summary["average_weekly_hours"]),
        ("Total Night Hours", summary["total_night_hours"]),
        ("Est. Night Allowance", summary["estimated_night_allowance_amount"]),
    ]
    for offset, (label, value) in enumerate(meta_rows, start=3):
        ws.cell(row=offset, column=1, value=label)
        ws.cell(row=offset, column=2, value=value)
    _style_metadata_rows(ws, start_row=3, end_row=2 + len(meta_rows))
    _auto_width(ws)


def build_period_xlsx_bytes(db: Session, *, period_id: int) -> bytes:
    period = get_period(db, period_id)
    rows = period_results(db, period_id)
    summary = summarize_settlements([result for result, _ in rows]).to_dict()

    wb = Workbook()
    _build_summary_sheet(wb.active, period, summary)

    results_ws = wb.create_sheet("Results")
    results_ws.append(RESULT_HEADERS)
    _style_header(results_ws)
    for result, employee in rows:
        results_ws.append(
            [
                employee.id,
                employee.full_name,
                result.work_days,
                result.total_actual_hours,
                result.number_of_weeks,
                result.weekly_average_hours,
                result.standard_weekly_hours,
                result.excess_hours,
                result.total_night_hours,
                result.overtime_allowance_hours,
                result.hourly_rate,
                result.overtime_multiplier,
                result.overtime_allowance_amount,
                result.estimated_night_allowance_amount,
                "FINALIZED" if result.finalized else "DRAFT",
            ]
        )
    _style_table(results_ws, header_row=1, highlight_col=RESULT_HEADERS.index("Overtime Allowance") + 1)
    _auto_width(results_ws)

    monthly_ws = wb.create_sheet("Monthly")
    monthly_ws.append(MONTHLY_HEADERS)
    _style_header(monthly_ws)
    for result, employee in rows:
        for detail in stored_monthly_details(result):
            monthly_ws.append(
                [
                    employee.id,
                    employee.full_name,
                    detail.month,
                    detail.work_days,
                    detail.work_hours,
                    detail.night_hours,
                ]
            )
    _style_table(monthly_ws, header_row=1)
    _auto_width(monthly_ws)

    stream = BytesIO()
    wb.save(stream)
    return stream.getvalue()
