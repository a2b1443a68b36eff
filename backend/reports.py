# backend/reports.py
"""PDF export of a single exam attempt"""

import matplotlib
matplotlib.use('Agg')  # Use non-GUI backend - MUST be before pyplot import
import matplotlib.pyplot as plt
from matplotlib.lines import Line2D
import numpy as np

from io import BytesIO
from typing import Dict, List, Optional
import logging

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.lib.enums import TA_CENTER
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer, Image

logger = logging.getLogger(__name__)

TABLE_STYLE = [
    ('FONT', (0, 0), (-1, 0), 'Helvetica-Bold', 10),
    ('FONT', (0, 1), (-1, -1), 'Helvetica', 9),
    ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#34495E')),
    ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
    ('ALIGN', (0, 0), (-1, -1), 'LEFT'),
    ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
    ('GRID', (0, 0), (-1, -1), 1, colors.grey),
    ('TOPPADDING', (0, 0), (-1, -1), 6),
    ('BOTTOMPADDING', (0, 0), (-1, -1), 6),
    ('LEFTPADDING', (0, 0), (-1, -1), 10),
]


class PDFExportService:
    """Renders an attempt summary, its answers and a theta chart to PDF"""

    def __init__(self):
        self.styles = getSampleStyleSheet()
        self._setup_custom_styles()

    def _setup_custom_styles(self):
        self.styles.add(ParagraphStyle(
            name='CustomTitle',
            parent=self.styles['Heading1'],
            fontSize=20,
            textColor=colors.HexColor('#2C3E50'),
            alignment=TA_CENTER,
            spaceAfter=12
        ))
        self.styles.add(ParagraphStyle(
            name='SectionHeader',
            parent=self.styles['Heading2'],
            fontSize=13,
            textColor=colors.HexColor('#34495E'),
            spaceBefore=12,
            spaceAfter=6
        ))

    def _generate_theta_progression_chart(self, theta_start: float,
                                          answers: List[Dict]) -> Optional[BytesIO]:
        """Theta after each answer, starting point at question 0"""
        if not answers:
            logger.warning("No answers provided for theta progression chart")
            return None

        fig, ax = plt.subplots(figsize=(8, 4))
        try:
            positions = np.arange(0, len(answers) + 1)
            theta_values = np.array(
                [float(theta_start)] + [float(a['theta_after']) for a in answers]
            )

            ax.plot(positions, theta_values, 'b-', linewidth=2)
            for i, answer in enumerate(answers, start=1):
                color = 'green' if answer.get('is_correct') else 'red'
                ax.scatter(i, theta_values[i], c=color, s=60, zorder=5)

            ax.set_xlabel('Question Number', fontsize=11)
            ax.set_ylabel('Theta', fontsize=11)
            ax.set_ylim(-0.05, 1.05)
            ax.set_xticks(positions)
            ax.set_title('Ability estimate over time', fontsize=12, fontweight='bold')
            ax.grid(True, alpha=0.3)

            legend_elements = [
                Line2D([0], [0], marker='o', color='w', markerfacecolor='green',
                       markersize=8, label='Correct'),
                Line2D([0], [0], marker='o', color='w', markerfacecolor='red',
                       markersize=8, label='Incorrect')
            ]
            ax.legend(handles=legend_elements, loc='best')

            fig.tight_layout()
            buffer = BytesIO()
            fig.savefig(buffer, format='png', dpi=150, bbox_inches='tight')
            buffer.seek(0)
            return buffer
        finally:
            plt.close(fig)

    def generate_attempt_pdf(self, report: Dict) -> BytesIO:
        """Build the PDF for the dict returned by AttemptService.get_attempt_report"""
        summary = report['summary']
        answers = report['answers']

        buffer = BytesIO()
        doc = SimpleDocTemplate(buffer, pagesize=A4,
                                rightMargin=0.75 * inch, leftMargin=0.75 * inch,
                                topMargin=0.6 * inch, bottomMargin=0.6 * inch)
        elements = [
            Paragraph("Attempt Report", self.styles['CustomTitle']),
            Paragraph(report.get('exam_title') or "Adaptive exam", self.styles['Normal']),
            Spacer(1, 0.2 * inch),
            Paragraph("Summary", self.styles['SectionHeader']),
        ]

        finished_at = summary['finished_at']
        summary_rows = [
            ['Metric', 'Value'],
            ['Score', f"{summary['score']} / {summary['total']}"],
            ['Answered', str(summary['answered'])],
            ['Theta start', f"{summary['theta_start']:.2f}"],
            ['Theta end', f"{summary['theta_end']:.2f}"],
            ['Finished at', finished_at.strftime('%Y-%m-%d %H:%M') if finished_at else '-'],
        ]
        summary_table = Table(summary_rows, colWidths=[2.0 * inch, 4.0 * inch])
        summary_table.setStyle(TableStyle(TABLE_STYLE))
        elements.append(summary_table)

        chart = self._generate_theta_progression_chart(summary['theta_start'], answers)
        if chart is not None:
            elements.append(Spacer(1, 0.2 * inch))
            elements.append(Paragraph("Theta Progression", self.styles['SectionHeader']))
            elements.append(Image(chart, width=6.5 * inch, height=3.25 * inch))

        if answers:
            elements.append(Paragraph("Answers", self.styles['SectionHeader']))
            answer_rows = [['#', 'Question', 'Result', 'Theta before', 'Theta after']]
            for i, answer in enumerate(answers, start=1):
                answer_rows.append([
                    str(i),
                    str(answer['question_id']),
                    'Correct' if answer['is_correct'] else 'Incorrect',
                    f"{answer['theta_before']:.2f}",
                    f"{answer['theta_after']:.2f}",
                ])
            answer_table = Table(answer_rows, colWidths=[0.5 * inch, 1.2 * inch, 1.3 * inch,
                                                         1.5 * inch, 1.5 * inch])
            answer_table.setStyle(TableStyle(TABLE_STYLE))
            elements.append(answer_table)

        doc.build(elements)
        buffer.seek(0)
        logger.info(f"Generated PDF for attempt {summary['attempt_id']} "
                    f"({len(answers)} answers)")
        return buffer
