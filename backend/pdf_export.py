"""
PDF rendering for issue exports.
"""

import io
import logging
from typing import Iterable, Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import cm
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle, PageBreak

import models
from time_utils import utc_now

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 35


def _text(value: Optional[str]) -> str:
    """Escape free text for a Paragraph, keeping line breaks."""
    if not value:
        return "-"
    return escape(value).replace("\n", "<br/>")


def _styles():
    styles = getSampleStyleSheet()
    return {
        "title": ParagraphStyle(
            "ExportTitle",
            parent=styles["Heading1"],
            fontSize=18,
            textColor=colors.HexColor("#1a365d"),
            spaceAfter=6,
        ),
        "subtitle": ParagraphStyle(
            "ExportSubtitle",
            parent=styles["Normal"],
            fontSize=10,
            textColor=colors.HexColor("#718096"),
            spaceAfter=12,
        ),
        "heading": ParagraphStyle(
            "ExportHeading",
            parent=styles["Heading2"],
            fontSize=13,
            textColor=colors.HexColor("#2d3748"),
            spaceBefore=12,
            spaceAfter=6,
        ),
        "body": ParagraphStyle(
            "ExportBody",
            parent=styles["Normal"],
            fontSize=10,
            leading=14,
            textColor=colors.HexColor("#2d3748"),
        ),
        "meta": ParagraphStyle(
            "ExportMeta",
            parent=styles["Normal"],
            fontSize=8,
            textColor=colors.HexColor("#718096"),
        ),
    }


def _table_style() -> TableStyle:
    return TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#e2e8f0")),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.HexColor("#2d3748")),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTNAME", (0, 1), (-1, -1), "Helvetica"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#cbd5e0")),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("TOPPADDING", (0, 0), (-1, -1), 5),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 5),
    ])


def _new_document(buffer: io.BytesIO, title: str) -> SimpleDocTemplate:
    return SimpleDocTemplate(
        buffer,
        pagesize=A4,
        title=title,
        rightMargin=1.5 * cm,
        leftMargin=1.5 * cm,
        topMargin=1.5 * cm,
        bottomMargin=1.5 * cm,
    )


def assignee_label(issue: models.Issue) -> str:
    count = len(issue.assignees)
    return f"{count} assigned" if count else "Unassigned"


def truncate_title(title: str) -> str:
    if len(title) > TITLE_MAX_LENGTH:
        return title[:TITLE_MAX_LENGTH] + "..."
    return title


def render_issue_pdf(issue: models.Issue) -> bytes:
    """
    Render a single issue: header, properties, description, bug details,
    then comments on a new page.
    """
    logger.debug(f"Rendering PDF for issue {issue.id}")
    buffer = io.BytesIO()
    styles = _styles()
    doc = _new_document(buffer, f"Issue #{issue.id}")

    content = [
        Paragraph(_text(f"#{issue.id} - {issue.title}"), styles["title"]),
        Paragraph(_text(f"Project: {issue.project.name} ({issue.project.key})"), styles["subtitle"]),
    ]

    assignees = ", ".join(user.name for user in issue.assignee_users) or "Unassigned"
    properties = [
        ["Type", issue.type],
        ["Status", issue.status],
        ["Priority", issue.priority],
        ["Reporter", issue.reporter.name if issue.reporter else "-"],
        ["Assignees", Paragraph(_text(assignees), styles["body"])],
        ["Due date", issue.due_date.strftime("%Y-%m-%d") if issue.due_date else "-"],
    ]
    properties_table = Table(properties, colWidths=[4 * cm, 12 * cm])
    properties_table.setStyle(TableStyle([
        ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("TEXTCOLOR", (0, 0), (0, -1), colors.HexColor("#4a5568")),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
    ]))
    content.append(properties_table)

    content.append(Paragraph("Description", styles["heading"]))
    content.append(Paragraph(_text(issue.description), styles["body"]))

    if issue.type == models.IssueType.bug.value:
        for heading, value in (
            ("Steps to Reproduce", issue.steps_to_reproduce),
            ("Expected Result", issue.expected_result),
            ("Actual Result", issue.actual_result),
        ):
            content.append(Paragraph(heading, styles["heading"]))
            content.append(Paragraph(_text(value), styles["body"]))

    if issue.comments:
        content.append(PageBreak())
        content.append(Paragraph("Comments", styles["heading"]))
        for comment in issue.comments:
            author = comment.author.name if comment.author else "Deleted user"
            stamp = comment.created_at.strftime("%Y-%m-%d %H:%M") if comment.created_at else ""
            content.append(Paragraph(_text(f"{author} - {stamp}"), styles["meta"]))
            content.append(Paragraph(_text(comment.body), styles["body"]))
            content.append(Spacer(1, 8))

    doc.build(content)
    return buffer.getvalue()


def render_issue_list_pdf(issues: Iterable[models.Issue], subtitle: Optional[str] = None) -> bytes:
    """Render a table of issues with one row per issue."""
    issues = list(issues)
    logger.debug(f"Rendering PDF list of {len(issues)} issues")
    buffer = io.BytesIO()
    styles = _styles()
    doc = _new_document(buffer, "Issues Export")

    generated = utc_now().strftime("%Y-%m-%d %H:%M UTC")
    content = [
        Paragraph("Issues Export", styles["title"]),
        Paragraph(_text(subtitle or f"Generated {generated} - {len(issues)} issue(s)"), styles["subtitle"]),
    ]

    rows = [["ID", "Title", "Type", "Status", "Priority", "Assignees"]]
    for issue in issues:
        rows.append([
            str(issue.id),
            truncate_title(issue.title),
            issue.type,
            issue.status,
            issue.priority,
            assignee_label(issue),
        ])

    table = Table(
        rows,
        colWidths=[1.5 * cm, 6.5 * cm, 2 * cm, 2.5 * cm, 2 * cm, 3 * cm],
        repeatRows=1,
    )
    table.setStyle(_table_style())
    content.append(table)

    doc.build(content)
    return buffer.getvalue()
