"""
exam_backend/services/report_service.py
Report generation

All documents are built in memory and returned as bytes / text:
- student exam report (PDF, reportlab)
- student history (PDF, reportlab)
- group results with a statistics sheet (XLSX, openpyxl)
- per-subcategory performance chart (PDF, reportlab graphics)
- admin login activity (CSV)
"""
import csv
import io
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional
from xml.sax.saxutils import escape

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font
from openpyxl.utils import get_column_letter
from reportlab.graphics.charts.barcharts import VerticalBarChart
from reportlab.graphics.shapes import Drawing, String
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from reportlab.platypus.doctemplate import LayoutError
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from exam_backend.errors import NotFoundError, log_and_raise_internal
from exam_backend.orm.exam import Exam
from exam_backend.orm.exam_answer import ExamAnswer
from exam_backend.orm.exam_session import ExamSession, ExamSessionStatus
from exam_backend.orm.question import Question
from exam_backend.orm.student import Group, Student, group_students
from exam_backend.orm.user import ADMIN_ROLES, LoginLog, User
from exam_backend.services.evaluation_service import get_performance_analytics

logger = logging.getLogger(__name__)

HEADER_COLOR = colors.Color(0.18, 0.31, 0.56)

RESULT_COLUMNS = ["Estudiante", "Email", "Estado", "Puntaje", "Máximo", "Porcentaje", "Calificación", "Curva"]
ADMIN_REPORT_COLUMNS = ["id", "name", "email", "role", "login_count"]


def _text(value: Any) -> str:
    """Escape user-supplied text for Paragraph, which parses its input as markup."""
    return escape(str(value))


def _fmt_date(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def _table(rows: List[List[Any]], col_widths=None) -> Table:
    table = Table(rows, colWidths=col_widths, repeatRows=1)
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), HEADER_COLOR),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.Color(0.95, 0.95, 0.95)]),
    ]))
    return table


def _render_pdf(story: List[Any], title: str) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        title=title,
        leftMargin=18 * mm,
        rightMargin=18 * mm,
        topMargin=18 * mm,
        bottomMargin=18 * mm,
    )
    try:
        doc.build(story)
    except LayoutError as e:
        log_and_raise_internal(e, f"rendering {title}")
    return buffer.getvalue()


def score_stats(scores: List[float]) -> Dict[str, float]:
    """Average, population standard deviation, max and min."""
    if not scores:
        return {"average": 0.0, "std_dev": 0.0, "max": 0.0, "min": 0.0}
    average = sum(scores) / len(scores)
    std_dev = math.sqrt(sum((s - average) ** 2 for s in scores) / len(scores))
    return {
        "average": round(average, 2),
        "std_dev": round(std_dev, 2),
        "max": round(max(scores), 2),
        "min": round(min(scores), 2),
    }


async def _student_or_404(db: AsyncSession, student_id: int) -> Student:
    student = await db.get(Student, student_id)
    if student is None:
        raise NotFoundError("Student", student_id)
    return student


async def _exam_or_404(db: AsyncSession, exam_id: int) -> Exam:
    exam = await db.get(Exam, exam_id)
    if exam is None:
        raise NotFoundError("Exam", exam_id)
    return exam


async def _latest_session(db: AsyncSession, exam_id: int, user_id: int) -> Optional[ExamSession]:
    result = await db.execute(
        select(ExamSession)
        .where(ExamSession.exam_id == exam_id, ExamSession.student_id == user_id)
        .order_by(
            (ExamSession.status == ExamSessionStatus.graded).desc(),
            ExamSession.id.desc(),
        )
        .limit(1)
    )
    return result.scalars().first()


async def student_exam_report(db: AsyncSession, student_id: int, exam_id: int) -> bytes:
    student = await _student_or_404(db, student_id)
    exam = await _exam_or_404(db, exam_id)
    session = await _latest_session(db, exam_id, student.user_id)
    if session is None:
        raise NotFoundError("Exam session for student", student_id)

    answers = await db.execute(
        select(ExamAnswer, Question)
        .join(Question, Question.id == ExamAnswer.question_id)
        .where(ExamAnswer.session_id == session.id)
        .order_by(ExamAnswer.question_id)
    )
    styles = getSampleStyleSheet()
    cell = styles["BodyText"]
    rows = [["Pregunta", "Respuesta", "Correcta", "Puntos"]]
    for answer, question in answers.all():
        rows.append([
            Paragraph(_text(question.content), cell),
            Paragraph(_text(answer.answer or "-"), cell),
            Paragraph(_text(question.correct_answer or "(revisión manual)"), cell),
            f"{answer.points_awarded:g} / {question.points:g}",
        ])

    story = [
        Paragraph("Reporte de Examen", styles["Title"]),
        Paragraph(f"Estudiante: {_text(student.name)} {_text(student.last_name)}", styles["Normal"]),
        Paragraph(f"Examen: {_text(exam.title)}", styles["Normal"]),
        Paragraph(f"Fecha: {_fmt_date(session.submitted_at or session.started_at)}", styles["Normal"]),
        Paragraph(
            f"Resultado: {session.score if session.score is not None else '-'} / "
            f"{session.max_score if session.max_score is not None else '-'} "
            f"({session.percentage if session.percentage is not None else '-'}%) "
            f"Calificación {session.grade or '-'}",
            styles["Normal"],
        ),
        Spacer(1, 6 * mm),
        _table(rows, col_widths=[70 * mm, 40 * mm, 40 * mm, 24 * mm]),
    ]
    logger.info(f"Student report generated: student {student_id}, exam {exam_id}")
    return _render_pdf(story, "Reporte de Examen")


async def student_history_report(db: AsyncSession, student_id: int) -> bytes:
    student = await _student_or_404(db, student_id)
    result = await db.execute(
        select(ExamSession, Exam.title)
        .join(Exam, Exam.id == ExamSession.exam_id)
        .where(ExamSession.student_id == student.user_id)
        .order_by(ExamSession.id)
    )
    rows = [["Examen", "Fecha", "Puntuación", "Calificación", "Estado"]]
    for session, title in result.all():
        rows.append([
            title,
            _fmt_date(session.submitted_at or session.started_at),
            f"{session.percentage:.2f}%" if session.percentage is not None else "-",
            session.grade or "-",
            session.status.value,
        ])

    styles = getSampleStyleSheet()
    story = [
        Paragraph("Historial Académico", styles["Title"]),
        Paragraph(f"Estudiante: {_text(student.name)} {_text(student.last_name)}", styles["Normal"]),
        Spacer(1, 6 * mm),
        _table(rows),
    ]
    return _render_pdf(story, "Historial Académico")


async def group_result_rows(db: AsyncSession, group_id: int, exam_id: int) -> List[Dict[str, Any]]:
    members = await db.execute(
        select(Student)
        .join(group_students, group_students.c.student_id == Student.id)
        .where(group_students.c.group_id == group_id)
        .order_by(Student.last_name, Student.name)
    )
    rows = []
    for student in members.scalars().all():
        session = await _latest_session(db, exam_id, student.user_id)
        rows.append({
            "student": f"{student.name} {student.last_name}",
            "email": student.email,
            "status": session.status.value if session else "sin sesión",
            "score": session.score if session else None,
            "max_score": session.max_score if session else None,
            "percentage": session.percentage if session else None,
            "grade": session.grade if session else None,
            "curved_score": session.curved_score if session else None,
        })
    return rows


async def group_report(db: AsyncSession, group_id: int, exam_id: int) -> bytes:
    group = await db.get(Group, group_id)
    if group is None:
        raise NotFoundError("Group", group_id)
    await _exam_or_404(db, exam_id)
    rows = await group_result_rows(db, group_id, exam_id)

    wb = Workbook()
    ws = wb.active
    ws.title = "Resultados"
    ws.append(RESULT_COLUMNS)

    header_font = Font(bold=True)
    center = Alignment(horizontal="center", vertical="center")
    for col in range(1, len(RESULT_COLUMNS) + 1):
        header_cell = ws.cell(row=1, column=col)
        header_cell.font = header_font
        header_cell.alignment = center
        ws.column_dimensions[get_column_letter(col)].width = 18
    ws.freeze_panes = "A2"

    for row in rows:
        ws.append([
            row["student"], row["email"], row["status"], row["score"],
            row["max_score"], row["percentage"], row["grade"], row["curved_score"],
        ])

    stats = score_stats([r["percentage"] for r in rows if r["percentage"] is not None])
    stats_ws = wb.create_sheet("Estadísticas")
    stats_ws.append(["Métrica", "Valor"])
    for col in (1, 2):
        stats_ws.cell(row=1, column=col).font = header_font
        stats_ws.column_dimensions[get_column_letter(col)].width = 24
    stats_ws.append(["Promedio", stats["average"]])
    stats_ws.append(["Desviación Estándar", stats["std_dev"]])
    stats_ws.append(["Máximo", stats["max"]])
    stats_ws.append(["Mínimo", stats["min"]])

    buffer = io.BytesIO()
    wb.save(buffer)
    logger.info(f"Group report generated: group {group_id}, exam {exam_id}, {len(rows)} students")
    return buffer.getvalue()


def _performance_drawing(topics: Dict[str, float]) -> Drawing:
    drawing = Drawing(160 * mm, 90 * mm)
    chart = VerticalBarChart()
    chart.x = 15 * mm
    chart.y = 15 * mm
    chart.width = 135 * mm
    chart.height = 65 * mm
    labels = list(topics) or ["-"]
    chart.data = [[topics[t] for t in topics] or [0]]
    chart.categoryAxis.categoryNames = labels
    chart.categoryAxis.labels.angle = 20
    chart.categoryAxis.labels.boxAnchor = "ne"
    chart.valueAxis.valueMin = 0
    chart.valueAxis.valueMax = 100
    chart.valueAxis.valueStep = 20
    chart.bars[0].fillColor = HEADER_COLOR
    drawing.add(chart)
    drawing.add(String(15 * mm, 84 * mm, "Rendimiento por subcategoría (%)", fontSize=10))
    return drawing


async def performance_chart(db: AsyncSession, exam_id: int) -> bytes:
    exam = await _exam_or_404(db, exam_id)
    analytics = await get_performance_analytics(db, exam_id)
    styles = getSampleStyleSheet()
    story = [
        Paragraph(f"Rendimiento: {_text(exam.title)}", styles["Title"]),
        Paragraph(
            f"Sesiones calificadas: {analytics['graded_sessions']} | "
            f"Promedio: {analytics['average_score']}% | "
            f"Desviación estándar: {analytics['standard_deviation']}",
            styles["Normal"],
        ),
        Spacer(1, 6 * mm),
        _performance_drawing(analytics["topic_performance"]),
    ]
    return _render_pdf(story, "Rendimiento")


async def admin_report(db: AsyncSession, start_date: datetime, end_date: datetime) -> str:
    """CSV of admin accounts with their login count between the two dates."""
    login_count = (
        select(LoginLog.user_id, func.count(LoginLog.id).label("login_count"))
        .where(LoginLog.created_at.between(start_date, end_date), LoginLog.success.is_(True))
        .group_by(LoginLog.user_id)
        .subquery()
    )
    result = await db.execute(
        select(User.id, User.name, User.email, User.role, func.coalesce(login_count.c.login_count, 0))
        .outerjoin(login_count, login_count.c.user_id == User.id)
        .where(User.role.in_(ADMIN_ROLES))
        .order_by(User.id)
    )
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(ADMIN_REPORT_COLUMNS)
    for user_id, name, email, role, count in result.all():
        writer.writerow([user_id, name, email, role.value, count])
    return buffer.getvalue()
