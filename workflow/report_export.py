import logging
from io import BytesIO

import qrcode
from bs4 import BeautifulSoup
from django.conf import settings
from django.utils import timezone
from docx import Document
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.shared import Inches, Pt, RGBColor

logger = logging.getLogger(__name__)

DOCX_CONTENT_TYPE = 'application/vnd.openxmlformats-officedocument.wordprocessingml.document'
FONT = 'Calibri'

SECTIONS = (
    ('clinical_history', 'Clinical History'),
    ('technique', 'Technique'),
    ('comparison', 'Comparison'),
    ('findings', 'Findings'),
    ('impression', 'Impression'),
    ('recommendations', 'Recommendations'),
)


def _fmt(value):
    if value is None:
        return None
    return value.isoformat()


def report_to_dict(report):
    study = report.study
    radiologist = report.radiologist
    return {
        'report_number': report.report_number,
        'status': report.status,
        'version': report.version,
        'study': {
            'id': study.id,
            'study_instance_uid': study.study_instance_uid,
            'accession_number': study.accession_number,
            'patient_name': study.patient_name,
            'patient_id': study.patient_id,
            'patient_sex': study.patient_sex,
            'patient_age': study.patient_age,
            'modality': study.modality,
            'study_description': study.study_description,
            'study_date': _fmt(study.study_date),
            'referring_physician': study.referring_physician,
        },
        'radiologist': {
            'id': radiologist.id,
            'name': radiologist.get_full_name() or radiologist.email,
            'email': radiologist.email,
        },
        'content': {field: getattr(report, field) for field in report.CONTENT_FIELDS},
        'is_critical': report.is_critical,
        'critical_findings': report.critical_findings,
        'annotations': report.annotations,
        'created_at': _fmt(report.created_at),
        'finalized_at': _fmt(report.finalized_at),
        'signed_at': _fmt(report.signed_at),
        'signature_type': report.signature_type,
        'exported_at': timezone.now().isoformat(),
    }


def _style_run(run, size=12, bold=False):
    run.font.size = Pt(size)
    run.font.name = FONT
    run.bold = bold
    return run


def _add_html(doc, html):
    """Render the rich-text subset the report editor produces (p, b/i/u, lists)."""
    soup = BeautifulSoup(html, 'html.parser')
    if not soup.find(['p', 'ul', 'ol']):
        for line in soup.get_text().splitlines():
            if line.strip():
                para = doc.add_paragraph()
                para.paragraph_format.space_after = Pt(3)
                _style_run(para.add_run(line.strip()))
        return

    for element in soup.find_all(['p', 'ul', 'ol']):
        if element.name == 'p':
            para = doc.add_paragraph()
            para.paragraph_format.space_after = Pt(3)
            para.paragraph_format.space_before = Pt(0)
            para.paragraph_format.line_spacing = 1.2
            for child in element.children:
                if isinstance(child, str):
                    run = para.add_run(child)
                else:
                    run = para.add_run(child.get_text())
                    run.bold = child.name in ('strong', 'b')
                    run.italic = child.name in ('em', 'i')
                    run.underline = child.name == 'u'
                run.font.size = Pt(12)
                run.font.name = FONT
        else:
            style = 'List Bullet' if element.name == 'ul' else 'List Number'
            for li in element.find_all('li', recursive=False):
                para = doc.add_paragraph(style=style)
                para.paragraph_format.space_after = Pt(3)
                _style_run(para.add_run(li.get_text()))


def _add_patient_table(doc, study, report):
    rows = [
        ('Name', study.patient_name or 'Unknown', 'Patient ID', study.patient_id or 'N/A'),
        ('Age', study.patient_age or 'N/A', 'Exam date', _fmt(study.study_date) or 'N/A'),
        ('Sex', (study.patient_sex or 'U')[:1].upper(), 'Report No', report.report_number),
        ('Modality', study.modality or 'N/A', 'Refd By', study.referring_physician or 'N/A'),
    ]
    table = doc.add_table(rows=len(rows), cols=4)
    table.style = 'Table Grid'
    for row, values in zip(table.rows, rows):
        for index, (cell, value) in enumerate(zip(row.cells, values)):
            cell.text = ''
            _style_run(cell.paragraphs[0].add_run(str(value)), size=11, bold=index % 2 == 0)


def _add_qr(doc, link):
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(link)
    qr.make(fit=True)
    qr_buffer = BytesIO()
    qr.make_image(fill_color="black", back_color="white").save(qr_buffer, format='PNG')
    qr_buffer.seek(0)

    qr_para = doc.add_paragraph()
    qr_para.alignment = WD_ALIGN_PARAGRAPH.RIGHT
    qr_para.add_run().add_picture(qr_buffer, width=Inches(1.2))
    text_para = doc.add_paragraph()
    text_para.alignment = WD_ALIGN_PARAGRAPH.RIGHT
    text_run = _style_run(text_para.add_run("Scan to view the images"), size=10)
    text_run.font.color.rgb = RGBColor(0, 102, 204)


def build_report_docx(report):
    study = report.study
    organization = study.organization
    doc = Document()

    section = doc.sections[0]
    section.page_height = Inches(11.69)
    section.page_width = Inches(8.27)
    section.top_margin = Inches(0.4)
    section.bottom_margin = Inches(0.4)
    section.left_margin = Inches(0.5)
    section.right_margin = Inches(0.5)

    title_para = section.header.paragraphs[0]
    title_para.alignment = WD_ALIGN_PARAGRAPH.CENTER
    title_run = _style_run(title_para.add_run(organization.name.upper()), size=13, bold=True)
    title_run.font.color.rgb = RGBColor(128, 128, 128)

    _add_patient_table(doc, study, report)
    doc.add_paragraph()

    if report.template is not None:
        heading = doc.add_paragraph()
        heading.alignment = WD_ALIGN_PARAGRAPH.CENTER
        _style_run(heading.add_run(report.template.name), size=13, bold=True).underline = True

    if report.is_critical:
        critical = doc.add_paragraph()
        run = _style_run(critical.add_run(f"CRITICAL FINDINGS: {report.critical_findings or 'See impression'}"), bold=True)
        run.font.color.rgb = RGBColor(192, 0, 0)

    for field, title in SECTIONS:
        value = getattr(report, field)
        if not value:
            continue
        _style_run(doc.add_paragraph().add_run(title.upper()), bold=True)
        _add_html(doc, value)

    _add_qr(doc, f"{settings.FRONTEND_URL}/viewer/{study.study_instance_uid}")

    radiologist = report.radiologist
    profile = getattr(radiologist, 'profile', None)
    sig_para = doc.add_paragraph()
    sig_para.paragraph_format.space_before = Pt(20)
    _style_run(sig_para.add_run(radiologist.get_full_name() or radiologist.email), bold=True)
    if profile is not None and profile.specialization:
        _style_run(doc.add_paragraph().add_run(profile.specialization), size=11)
    _style_run(doc.add_paragraph().add_run(organization.name), size=11)
    if report.signed_at:
        _style_run(
            doc.add_paragraph().add_run(f"Electronically signed {report.signed_at:%Y-%m-%d %H:%M}"),
            size=10,
        )

    buffer = BytesIO()
    doc.save(buffer)
    logger.info(f"DOCX generated for report {report.report_number}")
    return buffer.getvalue()
