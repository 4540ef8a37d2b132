"""
PDF generation for Lead Velocity
Uses ReportLab to create the broker strategy snapshot and the scheduled
communication report attachment
"""


from io import BytesIO
from datetime import datetime
from xml.sax.saxutils import escape

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import inch
from reportlab.lib import colors
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.enums import TA_CENTER, TA_LEFT, TA_JUSTIFY
from reportlab.platypus import (
    SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle, KeepTogether
)
from reportlab.graphics.shapes import Drawing
from reportlab.graphics.charts.barcharts import HorizontalBarChart
from reportlab.pdfgen import canvas

from services.report_service import format_duration


# ===== COLOR SCHEME =====
COLORS = {
    'primary':    colors.HexColor('#4f46e5'),   # Indigo 600: headers, key elements
    'secondary':  colors.HexColor('#1e293b'),   # Slate 800: header bar
    'accent':     colors.HexColor('#10b981'),   # Emerald 500: highlights, dividers
    'row_alt':    colors.HexColor('#eef2ff'),   # Indigo 50: alternating rows
    'success':    colors.HexColor('#059669'),
    'warning':    colors.HexColor('#d97706'),
    'danger':     colors.HexColor('#dc2626'),
    'text_dark':  colors.HexColor('#0f172a'),
    'text_light': colors.HexColor('#64748b'),
    'border':     colors.HexColor('#e2e8f0'),
    'white':      colors.HexColor('#ffffff'),
}

BAND_COLORS = {
    'High': COLORS['success'],
    'Medium': COLORS['warning'],
    'Low': COLORS['danger'],
}

ANSWER_LABELS = [
    ('crm_usage', 'CRM Usage'),
    ('speed_to_contact', 'Contact Speed'),
    ('team_size', 'Team Size'),
    ('follow_up_process', 'Follow-up Process'),
    ('monthly_lead_spend', 'Monthly Lead Spend'),
    ('cpl_awareness', 'CPL Awareness'),
    ('pricing_comfort', 'Pricing Comfort'),
    ('desired_leads_weekly', 'Desired Leads / Week'),
    ('max_capacity_weekly', 'Max Capacity / Week'),
    ('product_focus_clarity', 'Product Focus'),
    ('geographic_focus_clarity', 'Geographic Focus'),
    ('growth_goal_clarity', 'Growth Goals'),
    ('timeline_to_start', 'Timeline'),
]


def get_custom_styles():
    """Create custom paragraph styles for the reports"""
    styles = getSampleStyleSheet()

    styles.add(ParagraphStyle(
        name='DocTitle',
        parent=styles['Heading1'],
        fontName='Helvetica-Bold',
        fontSize=22,
        textColor=COLORS['primary'],
        alignment=TA_LEFT,
        spaceAfter=6,
        leading=26
    ))

    styles.add(ParagraphStyle(
        name='DocSubtitle',
        parent=styles['Normal'],
        fontName='Helvetica',
        fontSize=11,
        textColor=COLORS['text_light'],
        spaceAfter=14,
        leading=14
    ))

    styles.add(ParagraphStyle(
        name='SectionHeading',
        parent=styles['Heading2'],
        fontName='Helvetica-Bold',
        fontSize=14,
        textColor=COLORS['secondary'],
        spaceBefore=12,
        spaceAfter=8,
        leading=18
    ))

    styles.add(ParagraphStyle(
        name='ReportBody',
        parent=styles['Normal'],
        fontName='Helvetica',
        fontSize=10,
        textColor=COLORS['text_dark'],
        alignment=TA_JUSTIFY,
        leading=14,
        spaceAfter=8
    ))

    styles.add(ParagraphStyle(
        name='BandLabel',
        parent=styles['Normal'],
        fontName='Helvetica-Bold',
        fontSize=26,
        alignment=TA_CENTER,
        leading=30
    ))

    return styles


def _table_style():
    return TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), COLORS['primary']),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('FONTNAME', (0, 1), (-1, -1), 'Helvetica'),
        ('FONTSIZE', (0, 0), (-1, -1), 9),
        ('ROWBACKGROUNDS', (0, 1), (-1, -1), [colors.white, COLORS['row_alt']]),
        ('GRID', (0, 0), (-1, -1), 0.5, COLORS['border']),
        ('TOPPADDING', (0, 0), (-1, -1), 6),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 6),
    ])


# ===== FOOTER HANDLER =====


class ReportCanvas(canvas.Canvas):
    """Canvas that stamps a header bar and page footer on every page"""

    def __init__(self, *args, **kwargs):
        self.header_label = kwargs.pop('header_label', '')
        self.report_date = kwargs.pop('report_date', '')
        canvas.Canvas.__init__(self, *args, **kwargs)
        self._saved_page_states = []

    def showPage(self):
        self._saved_page_states.append(dict(self.__dict__))
        self._startPage()

    def save(self):
        num_pages = len(self._saved_page_states)
        for state in self._saved_page_states:
            self.__dict__.update(state)
            self.draw_page_decorations(num_pages)
            canvas.Canvas.showPage(self)
        canvas.Canvas.save(self)

    def draw_page_decorations(self, num_pages):
        page_width, page_height = A4

        self.setFillColor(COLORS['secondary'])
        self.rect(0, page_height - 0.4*inch, page_width, 0.4*inch, stroke=0, fill=1)
        self.setFont('Helvetica-Bold', 8)
        self.setFillColor(COLORS['white'])
        self.drawString(0.75*inch, page_height - 0.27*inch, "LEAD VELOCITY")
        label_width = self.stringWidth(self.header_label, 'Helvetica', 8)
        self.setFont('Helvetica', 8)
        self.drawString(page_width - 0.75*inch - label_width, page_height - 0.27*inch, self.header_label)

        self.setStrokeColor(COLORS['accent'])
        self.setLineWidth(1)
        self.line(0.75*inch, 0.7*inch, page_width - 0.75*inch, 0.7*inch)

        self.setFont('Helvetica', 7.5)
        self.setFillColor(COLORS['text_light'])
        self.drawString(0.75*inch, 0.52*inch, f"Generated {self.report_date} · leadvelocity.co.za")
        page_text = f"Page {self._pageNumber} of {num_pages}"
        pw = self.stringWidth(page_text, 'Helvetica', 7.5)
        self.drawString((page_width - pw) / 2, 0.52*inch, page_text)


def _build_document(story, header_label):
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        topMargin=0.8 * inch,
        bottomMargin=0.9 * inch,
        leftMargin=0.75 * inch,
        rightMargin=0.75 * inch,
    )
    report_date = datetime.now().strftime("%d %B %Y")
    doc.build(
        story,
        canvasmaker=lambda *args, **kwargs: ReportCanvas(
            *args,
            header_label=header_label,
            report_date=report_date,
            **kwargs
        )
    )
    buffer.seek(0)
    return buffer


# ===== BROKER STRATEGY SNAPSHOT =====


def _score_chart(analysis):
    drawing = Drawing(6.5*inch, 1.9*inch)
    chart = HorizontalBarChart()
    chart.x = 1.3*inch
    chart.y = 0.15*inch
    chart.width = 4.8*inch
    chart.height = 1.6*inch
    chart.data = [[
        analysis['intent_score'],
        analysis['growth_score'],
        analysis['budget_score'],
        analysis['operational_score'],
    ]]
    chart.categoryAxis.categoryNames = ['Intent', 'Growth', 'Budget', 'Operational']
    chart.categoryAxis.labels.fontName = 'Helvetica'
    chart.categoryAxis.labels.fontSize = 9
    chart.valueAxis.valueMin = 0
    chart.valueAxis.valueMax = 100
    chart.valueAxis.valueStep = 20
    chart.valueAxis.labels.fontSize = 8
    chart.bars[0].fillColor = COLORS['primary']
    chart.barLabelFormat = '%d'
    chart.barLabels.fontSize = 8
    chart.barLabels.nudge = 8
    drawing.add(chart)
    return drawing


def generate_broker_snapshot_pdf(analysis, responses):
    """
    Generate the one-page strategy snapshot for a scored onboarding submission.

    Args:
        analysis: broker_analysis row as a dict (scores, band, flags, angle, ai_explanation)
        responses: broker_onboarding_responses row as a dict
    """
    styles = get_custom_styles()
    story = []

    broker_name = responses.get('full_name') or 'Prospective Broker'
    company = responses.get('company_name') or ''

    story.append(Paragraph("Broker Strategy Snapshot", styles['DocTitle']))
    subtitle = escape(broker_name) + (f" · {escape(company)}" if company else '')
    story.append(Paragraph(subtitle, styles['DocSubtitle']))

    band = analysis['success_band']
    band_style = ParagraphStyle('BandValue', parent=styles['BandLabel'], textColor=BAND_COLORS.get(band, COLORS['text_dark']))
    summary = Table(
        [
            ['Success Probability', 'Success Band', 'Primary Sales Angle'],
            [
                Paragraph(f"{analysis['success_probability']}%", band_style),
                Paragraph(escape(band), band_style),
                escape(analysis['primary_sales_angle']),
            ],
        ],
        colWidths=[2.2*inch, 2.0*inch, 2.3*inch],
    )
    summary_style = _table_style()
    summary_style.add('ALIGN', (0, 0), (-1, -1), 'CENTER')
    summary_style.add('VALIGN', (0, 1), (-1, 1), 'MIDDLE')
    summary.setStyle(summary_style)
    story.append(summary)
    story.append(Spacer(1, 0.2*inch))

    story.append(Paragraph("Readiness Scores", styles['SectionHeading']))
    story.append(_score_chart(analysis))

    story.append(Paragraph("Risk Flags", styles['SectionHeading']))
    flags = analysis.get('risk_flags') or []
    if flags:
        for flag in flags:
            story.append(Paragraph(f"• {escape(flag)}", styles['ReportBody']))
    else:
        story.append(Paragraph("No risk flags were triggered.", styles['ReportBody']))

    explanation = analysis.get('ai_explanation')
    if explanation:
        story.append(Paragraph("Consultant Notes", styles['SectionHeading']))
        for block in explanation.split('\n\n'):
            if block.strip():
                story.append(Paragraph(escape(block.strip()), styles['ReportBody']))

    answers = [['Question', 'Answer']]
    for key, label in ANSWER_LABELS:
        value = responses.get(key)
        answers.append([label, escape(str(value)) if value is not None else '-'])
    answers_table = Table(answers, colWidths=[2.6*inch, 3.9*inch])
    answers_table.setStyle(_table_style())
    story.append(KeepTogether([Paragraph("Questionnaire Answers", styles['SectionHeading']), answers_table]))

    return _build_document(story, f"Strategy Snapshot · {broker_name}")


# ===== SCHEDULED COMMUNICATION REPORT =====


def generate_communication_report_pdf(report_name, date_range, analytics):
    """Render the analytics of a scheduled report as a PDF attachment."""
    styles = get_custom_styles()
    story = [
        Paragraph(escape(report_name), styles['DocTitle']),
        Paragraph(escape(date_range), styles['DocSubtitle']),
    ]

    summary = analytics.get('summary')
    if summary:
        story.append(Paragraph("Summary", styles['SectionHeading']))
        table = Table(
            [
                ['Metric', 'Value'],
                ['Total Communications', str(summary['total'])],
                ['Outbound', str(summary['outbound'])],
                ['Inbound', str(summary['inbound'])],
                ['Success Rate', f"{summary['success_rate']}%"],
            ],
            colWidths=[3.5*inch, 3*inch],
        )
        table.setStyle(_table_style())
        story.append(table)

    channels = analytics.get('channels')
    if channels:
        story.append(Paragraph("Channel Breakdown", styles['SectionHeading']))
        rows = [['Channel', 'Total', 'Successful', 'Rate']]
        for channel, stats in channels.items():
            rate = round(stats['successful'] / stats['total'] * 100) if stats['total'] else 0
            rows.append([str(channel).upper(), str(stats['total']), str(stats['successful']), f"{rate}%"])
        table = Table(rows, colWidths=[2.3*inch, 1.4*inch, 1.4*inch, 1.4*inch])
        table.setStyle(_table_style())
        story.append(table)

    response_times = analytics.get('response_times')
    if response_times:
        story.append(Paragraph("Response Times", styles['SectionHeading']))
        table = Table(
            [
                ['Metric', 'Value'],
                ['Responses Measured', str(response_times['count'])],
                ['Average', format_duration(response_times['average'])],
                ['Fastest', format_duration(response_times['min'])],
                ['Slowest', format_duration(response_times['max'])],
            ],
            colWidths=[3.5*inch, 3*inch],
        )
        table.setStyle(_table_style())
        story.append(table)

    if len(story) == 2:
        story.append(Paragraph("No sections were selected for this report.", styles['ReportBody']))

    return _build_document(story, report_name)
