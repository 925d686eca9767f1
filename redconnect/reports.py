from datetime import date
from typing import Iterable, Dict, Any, Optional
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib import colors
from reportlab.lib.units import cm
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer
from reportlab.lib.styles import getSampleStyleSheet
import json
from xml.sax.saxutils import escape

from .constants import UNIT_TYPES
from .ledger import days_remaining, risk_level
from .models import BloodUnit, EmergencyRequest

PII_KEYS = ["patient_name", "admission_number", "contact", "name", "phone", "email"]

RISK_COLORS = {"critical": colors.HexColor("#b71c1c"), "warning": colors.HexColor("#e67e22")}

_BASE_STYLE = [
    ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey), ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
    ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"), ("FONTSIZE", (0, 0), (-1, -1), 9),
    ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
]


def _sanitize_details(details_json: Optional[str]) -> str:
    if not details_json:
        return ""
    try:
        data = json.loads(details_json)
    except ValueError:
        return ""
    for k in PII_KEYS:
        if k in data:
            data[k] = "REDACTED"
    return json.dumps(data, ensure_ascii=False)


def export_inventory_pdf(units: Iterable[BloodUnit], pdf_path: str, today: Optional[date] = None):
    today = today or date.today()
    units = list(units)
    doc = SimpleDocTemplate(pdf_path, pagesize=A4, topMargin=1*cm, bottomMargin=1*cm,
                            leftMargin=1.3*cm, rightMargin=1.3*cm)
    styles = getSampleStyleSheet()
    story = [Paragraph("RedConnect: Inventory Ledger", styles["Title"]),
             Paragraph(f"As of {today.isoformat()}", styles["Normal"]), Spacer(1, 0.3*cm)]

    # aggregate block: available per type
    available = {t: 0 for t in UNIT_TYPES}
    for u in units:
        if u.status == "Available":
            available[u.type] += 1
    summary = Table([list(available.keys()), [str(v) for v in available.values()]])
    summary.setStyle(TableStyle(_BASE_STYLE + [("ALIGN", (0, 0), (-1, -1), "CENTER")]))
    story += [summary, Spacer(1, 0.4*cm)]

    data = [["Unit", "Type", "Volume (ml)", "Collected", "Expires", "Days", "Status", "Source"]]
    style = list(_BASE_STYLE)
    for i, u in enumerate(units, start=1):
        days = days_remaining(u, today)
        data.append([u.id, u.type, u.volume, u.collection_date.isoformat(),
                     u.expiry_date.isoformat(), days, u.status, u.source])
        level = risk_level(days)
        if level in RISK_COLORS:
            style.append(("TEXTCOLOR", (5, i), (5, i), RISK_COLORS[level]))

    table = Table(data, repeatRows=1)
    table.setStyle(TableStyle(style))
    story.append(table)
    doc.build(story)


def export_requests_pdf(requests: Iterable[EmergencyRequest], pdf_path: str, include_pii: bool = True):
    doc = SimpleDocTemplate(pdf_path, pagesize=landscape(A4), topMargin=1*cm, bottomMargin=1*cm,
                            leftMargin=1.0*cm, rightMargin=1.0*cm)
    styles = getSampleStyleSheet()
    story = [Paragraph("RedConnect: Emergency Requests", styles["Title"]), Spacer(1, 0.3*cm)]

    headers = (["ID", "Patient", "Hospital", "Type", "Units", "Urgency", "Status", "Allocated Units", "Submitted"]
               if include_pii else
               ["ID", "Hospital", "Type", "Units", "Urgency", "Status", "Allocated Units", "Submitted"])
    data = [headers]
    for r in requests:
        kind = "PLT" if r.is_platelet_request else r.blood_type
        row = [r.id, r.hospital, kind, r.units_needed, r.urgency, r.status,
               ", ".join(r.allocated_unit_ids), r.timestamp.strftime("%Y-%m-%d %H:%M")]
        if include_pii:
            row.insert(1, r.patient_name)
        data.append(row)

    table = Table(data, repeatRows=1)
    table.setStyle(TableStyle(_BASE_STYLE))
    story.append(table)
    doc.build(story)


def export_audit_pdf(rows: Iterable[Dict[str, Any]], pdf_path: str, redact_details: bool = False):
    doc = SimpleDocTemplate(pdf_path, pagesize=A4, topMargin=1*cm, bottomMargin=1*cm,
                            leftMargin=1.0*cm, rightMargin=1.0*cm)
    styles = getSampleStyleSheet()
    story = [Paragraph("RedConnect: Audit Log", styles["Title"]), Spacer(1, 0.3*cm)]

    headers = ["ID", "Timestamp", "Actor", "Action", "Entity", "Entity ID", "Details"]
    data = [headers]
    for r in rows:
        details = r.get("details_json")
        if redact_details:
            details = _sanitize_details(details)
        else:
            try:
                details = json.dumps(json.loads(details) if details else {}, ensure_ascii=False)
            except ValueError:
                details = ""
        data.append([r.get("id", ""), r.get("at", ""), r.get("actor", ""), r.get("action", ""),
                     r.get("entity", ""), r.get("entity_id", ""), Paragraph(escape(details), styles["BodyText"])])

    table = Table(data, repeatRows=1,
                  colWidths=[1.2*cm, 3.3*cm, 2.0*cm, 2.5*cm, 2.0*cm, 2.2*cm, 6.4*cm])
    table.setStyle(TableStyle(_BASE_STYLE[:3] + [
        ("FONTSIZE", (0, 0), (-1, -1), 8), ("VALIGN", (0, 0), (-1, -1), "TOP")
    ]))
    story.append(table)
    doc.build(story)
