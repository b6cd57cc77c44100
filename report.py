"""Spreadsheet export of a project's assessment view."""
import io

import openpyxl
from openpyxl.styles import Font, PatternFill, Alignment, Border, Side
from openpyxl.utils import get_column_letter

from weights import WeightConfig, to_percent_payload

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

HEADERS = [
    "Student", "Email", "Group",
    "Task (0-10)", "Peer Review (0-10)", "Code (0-10)", "Late Tasks",
    "Calculated Score", "Adjusted Score", "Adjustment Reason",
    "Effective Score", "Free-rider", "Final",
]

_header_font = Font(bold=True, color="FFFFFF", size=11)
_header_fill = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
_override_fill = PatternFill(start_color="FFF2CC", end_color="FFF2CC", fill_type="solid")
_flag_font = Font(bold=True, color="C00000")
_thin = Side(style='thin')
_border = Border(left=_thin, right=_thin, top=_thin, bottom=_thin)


def report_filename(assessment):
    return f"assessment-report-project-{assessment['projectId']}.xlsx"


def _rows(assessment):
    for s in assessment["students"]:
        yield [
            s.get("fullName") or f"Student {s['userId']}",
            s.get("email") or "",
            s.get("groupName") or "",
            round(s["taskCompletionScore"], 2),
            round(s["peerReviewScore"], 2),
            round(s["codeContributionScore"], 2),
            s["lateTaskCount"],
            round(s["calculatedScore"], 2),
            None if s["adjustedScore"] is None else round(s["adjustedScore"], 2),
            s.get("adjustmentReason") or "",
            round(s["effectiveScore"], 2),
            "YES" if s["isFreeRider"] else "no",
            "yes" if s["isFinal"] else "no",
        ]


def _write_header(ws, headers):
    for col_idx, header in enumerate(headers, 1):
        cell = ws.cell(row=1, column=col_idx, value=header)
        cell.font = _header_font
        cell.fill = _header_fill
        cell.alignment = Alignment(horizontal='center', wrap_text=True)
        cell.border = _border


def _autofit(ws, headers, rows):
    for col_idx, header in enumerate(headers, 1):
        max_len = len(str(header))
        for row in rows:
            if col_idx - 1 < len(row) and row[col_idx - 1] is not None:
                max_len = max(max_len, len(str(row[col_idx - 1])))
        ws.column_dimensions[get_column_letter(col_idx)].width = min(max_len + 4, 50)


def build_workbook(assessment):
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Assessment"
    _write_header(ws, HEADERS)

    rows = list(_rows(assessment))
    adjusted_col = HEADERS.index("Adjusted Score") + 1
    flag_col = HEADERS.index("Free-rider") + 1
    for row_idx, (row, student) in enumerate(zip(rows, assessment["students"]), 2):
        for col_idx, value in enumerate(row, 1):
            cell = ws.cell(row=row_idx, column=col_idx, value=value)
            cell.border = _border
            cell.alignment = Alignment(wrap_text=True, vertical='top')
        # overrides are shown next to the system value, highlighted
        if student["adjustedScore"] is not None:
            ws.cell(row=row_idx, column=adjusted_col).fill = _override_fill
        if student["isFreeRider"]:
            ws.cell(row=row_idx, column=flag_col).font = _flag_font
    _autofit(ws, HEADERS, rows)
    ws.freeze_panes = "A2"

    cfg = wb.create_sheet("Configuration")
    config = WeightConfig.from_dict(assessment["weightConfig"])
    pct = to_percent_payload(config)
    settings = [
        ("Project", assessment["projectName"]),
        ("Assessment status", assessment["assessmentStatus"]),
        ("Finalized at", assessment.get("finalizedAt") or ""),
        ("Task completion weight (W1, %)", pct["weightW1"]),
        ("Peer review weight (W2, %)", pct["weightW2"]),
        ("Code contribution weight (W3, %)", pct["weightW3"]),
        ("Late penalty per task (W4, %)", pct["weightW4"]),
        ("Free-rider threshold (% of group average)", pct["freeriderThreshold"]),
        ("Pressure threshold", pct["pressureThreshold"]),
        ("Students", assessment["totalStudents"]),
        ("Average effective score", assessment["averageScore"]),
        ("Potential free-riders", assessment["freeRiderCount"]),
    ]
    _write_header(cfg, ["Setting", "Value"])
    for row_idx, (label, value) in enumerate(settings, 2):
        cfg.cell(row=row_idx, column=1, value=label).border = _border
        cfg.cell(row=row_idx, column=2, value=value).border = _border
    _autofit(cfg, ["Setting", "Value"], settings)
    return wb


def export_assessment(assessment):
    """Return the workbook as bytes."""
    buf = io.BytesIO()
    build_workbook(assessment).save(buf)
    buf.seek(0)
    return buf.getvalue()
