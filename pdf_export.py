"""
pdf_export.py: Generate a branded PDF from a saved citation report.

Usage:
    from pdf_export import build_report_pdf
    pdf_bytes = build_report_pdf(report_dict, client_dict, citation_stats)
"""

from __future__ import annotations

from datetime import datetime
from fpdf import FPDF

# ---------------------------------------------------------------------------
# Latin-1 sanitiser: Helvetica only supports Latin-1 (no emoji / Unicode)
# ---------------------------------------------------------------------------
_REPLACEMENTS = {
    "…": "...",   # ellipsis
    "‘": "'",     # left single quote
    "’": "'",     # right single quote
    "“": '"',     # left double quote
    "”": '"',     # right double quote
    "–": "-",     # en dash
    "—": "--",    # em dash
    "•": "*",     # bullet
    "→": "->",    # arrow
}


def _s(text) -> str:
    """Return a Latin-1-safe, single-line string for fpdf cell() calls."""
    t = str(text)
    for char, repl in _REPLACEMENTS.items():
        t = t.replace(char, repl)
    t = t.replace("\n", " ").replace("\r", " ").replace("\t", " ")
    return t.encode("latin-1", errors="replace").decode("latin-1")


def _ms(text) -> str:
    """Latin-1-safe string that preserves newlines for multi_cell()."""
    t = str(text)
    for char, repl in _REPLACEMENTS.items():
        t = t.replace(char, repl)
    t = t.replace("\r", "").replace("\t", " ")
    return t.encode("latin-1", errors="replace").decode("latin-1")


def _points(text: str) -> list[str]:
    """Split a newline-joined bullet field into clean points."""
    points = []
    for line in (text or "").splitlines():
        line = line.strip().lstrip("-*\u2022").strip()
        if line:
            points.append(line)
    return points


# ---------------------------------------------------------------------------
# Colour palette
# ---------------------------------------------------------------------------
NAVY       = (15,  23,  42)   # headings / cover
GREEN      = (22, 163,  74)   # live
AMBER      = (217, 119,   6)  # pending
RED        = (220,  38,  38)  # failed
BRAND      = (16, 185, 129)   # section titles
LIGHT_BG   = (209, 250, 229)  # section title bg
GRAY_LINE  = (226, 232, 240)  # dividers
GRAY_TEXT  = (100, 116, 139)  # secondary text
WHITE      = (255, 255, 255)


# ---------------------------------------------------------------------------
# PDF subclass with helpers
# ---------------------------------------------------------------------------

class CitationReportPDF(FPDF):
    def __init__(self, report: dict, client: dict, stats: dict):
        super().__init__()
        self.report = report
        self.client = client
        self.stats = stats
        self.set_margins(18, 18, 18)
        self.set_auto_page_break(auto=True, margin=22)

    def header(self):
        if self.page_no() == 1:
            return
        self.set_font("Helvetica", "B", 8)
        self.set_text_color(*GRAY_TEXT)
        self.cell(0, 6, _s(f"Citation Report  |  {self.client.get('business_name', '')}"), align="L")
        self.ln(1)
        self.set_draw_color(*GRAY_LINE)
        self.line(self.l_margin, self.get_y(), self.w - self.r_margin, self.get_y())
        self.ln(4)

    def footer(self):
        self.set_y(-16)
        self.set_font("Helvetica", "", 8)
        self.set_text_color(*GRAY_TEXT)
        self.cell(0, 6, f"Page {self.page_no()} of {{nb}}", align="C")

    def rule(self):
        self.set_draw_color(*GRAY_LINE)
        self.line(self.l_margin, self.get_y(), self.w - self.r_margin, self.get_y())
        self.ln(3)

    def section_title(self, title: str):
        self.ln(4)
        self.set_fill_color(*LIGHT_BG)
        self.set_text_color(*NAVY)
        self.set_font("Helvetica", "B", 12)
        self.cell(0, 9, _s(f"  {title}"), fill=True, ln=True)
        self.ln(3)

    def body(self, text: str):
        self.set_font("Helvetica", "", 9)
        self.set_text_color(*NAVY)
        self.multi_cell(0, 5, _ms(text))
        self.set_x(self.l_margin)

    def bullet(self, text: str, indent: int = 4):
        x = self.l_margin + indent
        self.set_x(x)
        self.set_text_color(*NAVY)
        self.set_font("Helvetica", "B", 9)
        self.cell(4, 5, "-")
        self.set_font("Helvetica", "", 9)
        self.multi_cell(self.w - self.r_margin - x - 4, 5, _s(text))
        self.set_x(self.l_margin)

    def stat_box(self, label: str, value, color):
        """Small coloured tile with a count underneath its label."""
        w = (self.w - self.l_margin - self.r_margin - 9) / 4
        x, y = self.get_x(), self.get_y()
        self.set_fill_color(*color)
        self.rect(x, y, w, 16, "F")
        self.set_xy(x, y + 2)
        self.set_font("Helvetica", "B", 13)
        self.set_text_color(*WHITE)
        self.cell(w, 7, str(value), align="C")
        self.set_xy(x, y + 9)
        self.set_font("Helvetica", "", 7)
        self.cell(w, 5, _s(label.upper()), align="C")
        self.set_xy(x + w + 3, y)

    def score_circle(self, score: int):
        cx = self.l_margin + 18
        cy = self.get_y() + 12
        c = GREEN if score >= 70 else AMBER if score >= 40 else RED
        self.set_fill_color(*c)
        self.ellipse(cx - 12, cy - 10, 24, 20, "F")
        self.set_font("Helvetica", "B", 14)
        self.set_text_color(*WHITE)
        self.set_xy(cx - 12, cy - 5)
        self.cell(24, 10, str(score), align="C")
        self.set_font("Helvetica", "", 8)
        self.set_text_color(*GRAY_TEXT)
        self.set_xy(cx + 15, cy - 3)
        self.cell(0, 5, "/ 100  Citation Score")
        self.set_xy(self.l_margin, cy + 14)


# ---------------------------------------------------------------------------
# Section renderers
# ---------------------------------------------------------------------------

def _cover(pdf: CitationReportPDF):
    pdf.add_page()

    pdf.set_fill_color(*NAVY)
    pdf.rect(0, 0, pdf.w, 60, "F")

    pdf.set_xy(18, 18)
    pdf.set_font("Helvetica", "B", 22)
    pdf.set_text_color(*WHITE)
    pdf.cell(0, 10, "Local Citation Report", ln=True)

    pdf.set_x(18)
    pdf.set_font("Helvetica", "", 11)
    pdf.set_text_color(148, 163, 184)
    pdf.cell(0, 8, _s(pdf.client.get("business_name", "")), ln=True)

    pdf.set_xy(18, 66)
    ts = pdf.report.get("created_at") or ""
    try:
        date_str = datetime.fromisoformat(ts).strftime("%d %B %Y")
    except (TypeError, ValueError):
        date_str = ts[:10]

    meta_items = [
        ("Category",  pdf.client.get("category", "")),
        ("Location",  ", ".join(p for p in (pdf.client.get("city"), pdf.client.get("postcode")) if p)),
        ("Date",      date_str),
        ("Report ID", (pdf.report.get("id") or "")[:8]),
    ]
    for key, val in meta_items:
        pdf.set_font("Helvetica", "B", 9)
        pdf.set_text_color(*GRAY_TEXT)
        pdf.cell(32, 6, _s(f"{key}:"))
        pdf.set_font("Helvetica", "", 9)
        pdf.set_text_color(*NAVY)
        pdf.cell(0, 6, _s(str(val)), ln=True)

    pdf.ln(4)
    pdf.score_circle(int(pdf.client.get("citation_score") or 0))
    pdf.rule()


def _stats(pdf: CitationReportPDF):
    pdf.section_title("Citation Status")
    pdf.stat_box("Total", pdf.stats.get("total", 0), NAVY)
    pdf.stat_box("Live", pdf.stats.get("live", 0), GREEN)
    pdf.stat_box("Pending", pdf.stats.get("pending", 0), AMBER)
    pdf.stat_box("Failed", pdf.stats.get("failed", 0), RED)
    pdf.ln(20)


def _summary(pdf: CitationReportPDF):
    pdf.section_title("Executive Summary")
    pdf.body(pdf.report.get("summary") or "No summary available.")


def _bullets(pdf: CitationReportPDF, title: str, field: str):
    points = _points(pdf.report.get(field, ""))
    if not points:
        return
    pdf.section_title(title)
    for point in points:
        pdf.bullet(point)
        pdf.ln(1)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def build_report_pdf(report: dict, client: dict, stats: dict) -> bytes:
    """
    Build a PDF from a saved report, its client and current citation stats.
    Returns raw PDF bytes ready to send as an HTTP response.
    """
    pdf = CitationReportPDF(report, client, stats)
    pdf.alias_nb_pages()

    _cover(pdf)
    _stats(pdf)
    _summary(pdf)
    _bullets(pdf, "Key Insights", "insights")
    _bullets(pdf, "Recommendations", "recommendations")

    return bytes(pdf.output())
