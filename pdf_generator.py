"""
Revenue Attribution PDF Report
Uses ReportLab to render the dashboard and analytics summary as a shareable document
"""


from io import BytesIO
from xml.sax.saxutils import escape
from reportlab.lib.pagesizes import letter
from reportlab.lib.units import inch
from reportlab.lib import colors
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.enums import TA_CENTER, TA_LEFT
from reportlab.platypus import (
    SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle, HRFlowable
)
from reportlab.graphics.shapes import Drawing
from reportlab.graphics.charts.barcharts import HorizontalBarChart
from reportlab.pdfgen import canvas

from services.timestamps import parse_timestamp, utcnow


# ===== COLOR SCHEME =====
COLORS = {
    'primary':    colors.HexColor('#4f46e5'),   # Indigo 600, headers
    'secondary':  colors.HexColor('#1e1b4b'),   # Indigo 950, title band
    'accent':     colors.HexColor('#10b981'),   # Emerald 500, revenue figures
    'indigo_lt':  colors.HexColor('#eef2ff'),   # alternating rows
    'text_dark':  colors.HexColor('#0f172a'),
    'text_light': colors.HexColor('#64748b'),
    'border':     colors.HexColor('#e2e8f0'),
    'white':      colors.HexColor('#ffffff'),
}


# ===== HELPER FUNCTIONS =====


def _money(value, currency='USD'):
    value = float(value or 0)
    if currency and currency.upper() != 'USD':
        return f"{value:,.2f} {currency.upper()}"
    return f"${value:,.2f}"


def _trend(value):
    value = value or 0
    return f"+{value}%" if value > 0 else f"{value}%"


def _short_date(value):
    ts = parse_timestamp(value)
    return ts.strftime('%b %d, %Y') if ts else ''


def get_custom_styles():
    styles = getSampleStyleSheet()

    styles.add(ParagraphStyle(
        name='ReportTitle',
        parent=styles['Heading1'],
        fontName='Helvetica-Bold',
        fontSize=24,
        textColor=COLORS['secondary'],
        alignment=TA_LEFT,
        spaceAfter=6,
        leading=30
    ))

    styles.add(ParagraphStyle(
        name='ReportSubtitle',
        parent=styles['Normal'],
        fontName='Helvetica',
        fontSize=11,
        textColor=COLORS['text_light'],
        alignment=TA_LEFT,
        spaceAfter=10,
        leading=15
    ))

    styles.add(ParagraphStyle(
        name='SectionHeading',
        parent=styles['Heading2'],
        fontName='Helvetica-Bold',
        fontSize=14,
        textColor=COLORS['primary'],
        spaceBefore=14,
        spaceAfter=8,
        leading=18
    ))

    styles.add(ParagraphStyle(
        name='TableBody',
        parent=styles['Normal'],
        fontName='Helvetica',
        fontSize=8.5,
        textColor=COLORS['text_dark'],
        leading=11,
    ))

    styles.add(ParagraphStyle(
        name='Caption',
        parent=styles['Normal'],
        fontName='Helvetica',
        fontSize=9,
        textColor=COLORS['text_light'],
        leading=12
    ))

    return styles


def _table_style(header_color=None):
    return TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), header_color or COLORS['primary']),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (-1, 0), 9),
        ('FONTNAME', (0, 1), (-1, -1), 'Helvetica'),
        ('FONTSIZE', (0, 1), (-1, -1), 9),
        ('ALIGN', (0, 0), (-1, -1), 'LEFT'),
        ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
        ('ROWBACKGROUNDS', (0, 1), (-1, -1), [colors.white, COLORS['indigo_lt']]),
        ('GRID', (0, 0), (-1, -1), 0.5, COLORS['border']),
        ('TOPPADDING', (0, 0), (-1, -1), 6),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 6),
    ])


# ===== FOOTER HANDLER =====


class ReportCanvas(canvas.Canvas):
    """Canvas that stamps a footer with page numbers once the page count is known"""

    def __init__(self, *args, **kwargs):
        self.workspace_name = kwargs.pop('workspace_name', '')
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
            self.draw_footer(num_pages)
            canvas.Canvas.showPage(self)
        canvas.Canvas.save(self)

    def draw_footer(self, num_pages):
        page_width, _ = letter
        self.setStrokeColor(COLORS['primary'])
        self.setLineWidth(1)
        self.line(0.75*inch, 0.7*inch, page_width - 0.75*inch, 0.7*inch)

        self.setFont('Helvetica', 7.5)
        self.setFillColor(COLORS['text_light'])
        self.drawString(0.75*inch, 0.52*inch, f"{self.workspace_name} · Generated {self.report_date}")

        page_text = f"Page {self._pageNumber} of {num_pages}"
        pw = self.stringWidth(page_text, 'Helvetica', 7.5)
        self.drawString(page_width - 0.75*inch - pw, 0.52*inch, page_text)


# ===== SECTION BUILDERS =====


def _build_header(story, styles, workspace_name, report_date, range_info):
    story.append(Paragraph("Revenue Attribution Report", styles['ReportTitle']))
    period = ''
    if range_info:
        period = f" · Last 30 days: {_short_date(range_info.get('start'))} to {_short_date(range_info.get('end'))}"
    story.append(Paragraph(f"{escape(workspace_name)} · {report_date}{period}", styles['ReportSubtitle']))
    story.append(HRFlowable(width="100%", thickness=1.5, color=COLORS['accent'], spaceBefore=0, spaceAfter=12))


def _build_summary(story, styles, dashboard, analytics):
    story.append(Paragraph("Summary", styles['SectionHeading']))

    revenue = dashboard.get('revenue', {})
    testimonials = dashboard.get('testimonials', {})
    rows = [
        ['Metric', 'Value', 'Trend'],
        ['Revenue this month', _money(revenue.get('this_month')), _trend(revenue.get('trend'))],
        ['Revenue last 30 days', _money(analytics.get('total_revenue')), _trend(analytics.get('revenue_trend'))],
        ['All-time attributed revenue', _money(revenue.get('total')), ''],
        ['Conversions (30 days)', str(analytics.get('conversion_count', 0)), ''],
        ['Average order value', _money(analytics.get('avg_order_value')), ''],
        ['Testimonials collected (30 days)', str(analytics.get('total_collected', 0)),
         _trend(analytics.get('collected_trend'))],
        ['Pending review', str(testimonials.get('pending', 0)), ''],
        ['Average rating', f"{dashboard.get('avg_rating', 0)} / 5", ''],
        ['Widget click-through rate', f"{dashboard.get('widget_ctr', 0)}%", ''],
    ]
    table = Table(rows, colWidths=[3.2*inch, 2*inch, 1.3*inch])
    table.setStyle(_table_style())
    story.append(table)


def _build_top_drivers(story, styles, analytics):
    story.append(Paragraph("Top Revenue-Driving Testimonials", styles['SectionHeading']))
    performers = analytics.get('top_performers') or []
    if not performers:
        story.append(Paragraph(
            "No revenue has been attributed to testimonials yet.",
            styles['Caption']
        ))
        return

    rows = [['#', 'Customer', 'Company', 'Revenue']]
    for p in performers:
        rows.append([
            str(p.get('rank')),
            Paragraph(escape(p.get('name') or ''), styles['TableBody']),
            Paragraph(escape(p.get('company') or ''), styles['TableBody']),
            _money(p.get('revenue')),
        ])
    table = Table(rows, colWidths=[0.4*inch, 2.6*inch, 2.2*inch, 1.3*inch])
    table.setStyle(_table_style())
    story.append(table)


def _build_widget_chart(story, styles, analytics):
    widgets = [w for w in analytics.get('widgets') or [] if w.get('revenue')]
    if not widgets:
        return

    story.append(Paragraph("Revenue by Widget", styles['SectionHeading']))
    widgets = sorted(widgets, key=lambda w: w['revenue'])[-8:]

    drawing = Drawing(6.5*inch, 0.35*inch * len(widgets) + 0.6*inch)
    chart = HorizontalBarChart()
    chart.x = 1.6*inch
    chart.y = 0.3*inch
    chart.width = 4.5*inch
    chart.height = 0.35*inch * len(widgets)
    chart.data = [[w['revenue'] for w in widgets]]
    chart.categoryAxis.categoryNames = [(w.get('name') or '')[:22] for w in widgets]
    chart.categoryAxis.labels.fontName = 'Helvetica'
    chart.categoryAxis.labels.fontSize = 8
    chart.valueAxis.valueMin = 0
    chart.valueAxis.labels.fontSize = 7
    chart.bars[0].fillColor = COLORS['accent']
    chart.bars[0].strokeColor = None
    drawing.add(chart)
    story.append(drawing)


def _build_recent_events(story, styles, recent_events):
    story.append(Paragraph("Recent Revenue Events", styles['SectionHeading']))
    if not recent_events:
        story.append(Paragraph("No revenue events recorded yet.", styles['Caption']))
        return

    rows = [['Date', 'Amount', 'Source', 'Attributed to', 'Customer']]
    for e in recent_events:
        if e.get('testimonial_author'):
            target = f"Testimonial: {e['testimonial_author']}"
        elif e.get('widget_name'):
            target = f"Widget: {e['widget_name']}"
        else:
            target = 'Unattributed'
        rows.append([
            _short_date(e.get('attributed_at')),
            _money(e.get('amount'), e.get('currency')),
            e.get('source') or '',
            Paragraph(escape(target), styles['TableBody']),
            Paragraph(escape(e.get('customer_email') or ''), styles['TableBody']),
        ])
    table = Table(rows, colWidths=[1*inch, 1.1*inch, 0.8*inch, 2*inch, 1.6*inch], repeatRows=1)
    table.setStyle(_table_style(COLORS['secondary']))
    story.append(table)


# ===== MAIN FUNCTION =====


def generate_revenue_report_pdf(report, workspace_name='Workspace'):
    """
    Render the revenue attribution report.

    Args:
        report: dict with 'analytics', 'dashboard' and 'recent_events', as built by
            services.analytics.load_report_data
        workspace_name: Company or owner name printed in the header and footer

    Returns a BytesIO positioned at the start of the PDF.
    """
    buffer = BytesIO()

    doc = SimpleDocTemplate(
        buffer,
        pagesize=letter,
        topMargin=0.75 * inch,
        bottomMargin=0.9 * inch,
        leftMargin=0.75 * inch,
        rightMargin=0.75 * inch,
        title='Revenue Attribution Report',
    )

    styles = get_custom_styles()
    story = []
    report_date = utcnow().strftime("%B %d, %Y")
    analytics = report.get('analytics') or {}
    dashboard = report.get('dashboard') or {}

    _build_header(story, styles, workspace_name, report_date, analytics.get('range'))
    _build_summary(story, styles, dashboard, analytics)
    _build_top_drivers(story, styles, analytics)
    _build_widget_chart(story, styles, analytics)
    _build_recent_events(story, styles, report.get('recent_events') or [])

    story.append(Spacer(1, 0.3*inch))
    story.append(Paragraph(
        "Revenue is attributed from Stripe payments and manually tracked sales that reference a "
        "testimonial or widget. Figures are in the currency each payment was made in.",
        ParagraphStyle('Footnote', parent=styles['Caption'], alignment=TA_CENTER)
    ))

    doc.build(
        story,
        canvasmaker=lambda *args, **kwargs: ReportCanvas(
            *args,
            workspace_name=workspace_name,
            report_date=report_date,
            **kwargs
        )
    )

    buffer.seek(0)
    return buffer
