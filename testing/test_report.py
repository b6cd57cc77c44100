import io

import openpyxl

import ledger
import report


def test_workbook_layout(build):
    project, _, students = build.team(2)
    ledger.recalculate(project.id)
    row = ledger.score_for_student(project.id, students[1].id)
    ledger.adjust_score(row.id, 1.0, "No commits after week two")

    assessment = ledger.project_assessment(project.id)
    wb = openpyxl.load_workbook(io.BytesIO(report.export_assessment(assessment)))
    assert wb.sheetnames == ["Assessment", "Configuration"]

    ws = wb["Assessment"]
    assert [c.value for c in ws[1]] == report.HEADERS
    assert ws.max_row == 3
    by_name = {ws.cell(row=r, column=1).value: r for r in range(2, 4)}
    r = by_name[students[1].name]
    assert ws.cell(row=r, column=report.HEADERS.index("Adjusted Score") + 1).value == 1.0
    assert ws.cell(row=r, column=report.HEADERS.index("Free-rider") + 1).value == "YES"
    assert ws.cell(row=r, column=report.HEADERS.index("Adjustment Reason") + 1).value == "No commits after week two"

    cfg = {row[0].value: row[1].value for row in wb["Configuration"].iter_rows(min_row=2)}
    assert cfg["Project"] == project.name
    assert cfg["Task completion weight (W1, %)"] == 50.0
    assert cfg["Assessment status"] == "DRAFT"


def test_empty_project_exports_header_only(build):
    project = build.project()
    wb = report.build_workbook(ledger.project_assessment(project.id))
    assert wb["Assessment"].max_row == 1
    assert report.report_filename({"projectId": 7}) == "assessment-report-project-7.xlsx"
