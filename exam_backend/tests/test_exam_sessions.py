"""
Exam session lifecycle: start, pause, resume, submit and grading.
"""
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from exam_backend.errors import ErrorCode, InvalidStateError
from exam_backend.orm.exam import Exam
from exam_backend.orm.exam_session import ExamSession, ExamSessionStatus
from exam_backend.services import exam_service
from exam_backend.services.exam_service import INVALID_SESSION_STATE, can_transition
from exam_backend.tests.conftest import auth_headers, create_exam, create_question, create_student_account


@pytest_asyncio.fixture
async def algebra_exam(client, teacher_headers):
    question = await create_question(client, teacher_headers)
    return await create_exam(client, teacher_headers, [question["id"]])


async def start(client, headers, exam_id):
    return await client.post(f"/api/education/exams/{exam_id}/start", headers=headers)


class TestTransitionTable:

    @pytest.mark.parametrize("action, status, allowed", [
        ("pause", ExamSessionStatus.in_progress, True),
        ("pause", ExamSessionStatus.paused, False),
        ("pause", ExamSessionStatus.not_started, False),
        ("resume", ExamSessionStatus.paused, True),
        ("resume", ExamSessionStatus.in_progress, False),
        ("submit", ExamSessionStatus.in_progress, True),
        ("submit", ExamSessionStatus.paused, True),
        ("submit", ExamSessionStatus.submitted, False),
        ("submit", ExamSessionStatus.graded, False),
    ])
    def test_can_transition(self, action, status, allowed):
        assert can_transition(action, status) is allowed


class TestEndToEnd:

    async def test_correct_answer_is_graded_a(self, client, teacher_headers, student_headers, algebra_exam):
        question_id = algebra_exam["questions"][0]["id"]

        response = await start(client, student_headers, algebra_exam["id"])
        assert response.status_code == 200, response.text
        session = response.json()["session"]
        assert session["status"] == "in_progress"
        assert "correct_answer" not in response.json()["exam"]["questions"][0]

        response = await client.post(
            f"/api/education/exams/{session['id']}/submit",
            json={"answers": [{"question_id": question_id, "answer": "  x = 2 "}]},
            headers=student_headers,
        )
        assert response.status_code == 200, response.text
        result = response.json()
        assert result["status"] == "graded"
        assert result["score"] == 10
        assert result["percentage"] == 100
        assert result["grade"] == "A"
        assert result["performance"] == "Excelente"
        assert result["answers"][0]["is_correct"] is True

        score = await client.get(f"/api/education/evaluations/{session['id']}/score", headers=student_headers)
        assert score.status_code == 200
        assert score.json()["grade"] == "A"

    async def test_wrong_answer_is_f(self, client, student_headers, algebra_exam):
        session = (await start(client, student_headers, algebra_exam["id"])).json()["session"]
        question_id = algebra_exam["questions"][0]["id"]
        result = (await client.post(
            f"/api/education/exams/{session['id']}/submit",
            json={"answers": [{"question_id": question_id, "answer": "x = 3"}]},
            headers=student_headers,
        )).json()
        assert result["grade"] == "F"
        assert result["percentage"] == 0

    async def test_unanswered_questions_count_toward_max(self, client, teacher_headers, student_headers):
        first = await create_question(client, teacher_headers)
        second = await create_question(client, teacher_headers, content="Solve x - 1 = 0",
                                       options=["x = 0", "x = 1"], correct_answer="x = 1")
        exam = await create_exam(client, teacher_headers, [first["id"], second["id"]])
        session = (await start(client, student_headers, exam["id"])).json()["session"]

        result = (await client.post(
            f"/api/education/exams/{session['id']}/submit",
            json={"answers": [{"question_id": first["id"], "answer": "x = 2"}]},
            headers=student_headers,
        )).json()
        assert result["max_score"] == 20
        assert result["percentage"] == 50
        assert result["grade"] == "F"


class TestTransitions:

    async def test_pause_resume_submit(self, client, student_headers, algebra_exam):
        session_id = (await start(client, student_headers, algebra_exam["id"])).json()["session"]["id"]

        paused = await client.post(f"/api/education/exams/{session_id}/pause", headers=student_headers)
        assert paused.status_code == 200
        assert paused.json()["status"] == "paused"

        again = await client.post(f"/api/education/exams/{session_id}/pause", headers=student_headers)
        assert again.status_code == 400
        assert again.json()["message"] == INVALID_SESSION_STATE

        resumed = await client.post(f"/api/education/exams/{session_id}/resume", headers=student_headers)
        assert resumed.json()["status"] == "in_progress"

        resume_again = await client.post(f"/api/education/exams/{session_id}/resume", headers=student_headers)
        assert resume_again.status_code == 400

        await client.post(f"/api/education/exams/{session_id}/pause", headers=student_headers)
        submitted = await client.post(
            f"/api/education/exams/{session_id}/submit", json={"answers": []}, headers=student_headers
        )
        assert submitted.status_code == 200
        assert submitted.json()["status"] == "graded"

        for action in ("pause", "resume", "submit"):
            response = await client.post(
                f"/api/education/exams/{session_id}/{action}", json={"answers": []}, headers=student_headers
            )
            assert response.status_code == 400, action

    async def test_second_live_session_rejected(self, client, student_headers, algebra_exam):
        assert (await start(client, student_headers, algebra_exam["id"])).status_code == 200
        response = await start(client, student_headers, algebra_exam["id"])
        assert response.status_code == 400
        assert response.json()["message"] == INVALID_SESSION_STATE

    async def test_paused_session_still_blocks_start(self, client, student_headers, algebra_exam):
        session_id = (await start(client, student_headers, algebra_exam["id"])).json()["session"]["id"]
        await client.post(f"/api/education/exams/{session_id}/pause", headers=student_headers)
        assert (await start(client, student_headers, algebra_exam["id"])).status_code == 400

    async def test_foreign_session(self, client, session_factory, student_headers, algebra_exam):
        session_id = (await start(client, student_headers, algebra_exam["id"])).json()["session"]["id"]
        other, _ = await create_student_account(session_factory, "other@school.edu")

        response = await client.post(f"/api/education/exams/{session_id}/pause", headers=auth_headers(other))
        assert response.status_code == 400
        assert response.json()["message"] == INVALID_SESSION_STATE

    async def test_max_attempts(self, client, student_headers, algebra_exam):
        session_id = (await start(client, student_headers, algebra_exam["id"])).json()["session"]["id"]
        await client.post(f"/api/education/exams/{session_id}/submit", json={"answers": []}, headers=student_headers)

        response = await start(client, student_headers, algebra_exam["id"])
        assert response.status_code == 400
        assert response.json()["code"] == ErrorCode.MAX_ATTEMPTS_REACHED

    async def test_unknown_exam(self, client, student_headers):
        assert (await start(client, student_headers, 9999)).status_code == 404

    async def test_only_students_start(self, client, teacher_headers, algebra_exam):
        response = await start(client, teacher_headers, algebra_exam["id"])
        assert response.status_code == 403
        assert response.json()["message"] == "Role not authorized"

    async def test_answer_outside_exam_rejected(self, client, teacher_headers, student_headers, algebra_exam):
        stray = await create_question(client, teacher_headers, content="Another")
        session_id = (await start(client, student_headers, algebra_exam["id"])).json()["session"]["id"]
        response = await client.post(
            f"/api/education/exams/{session_id}/submit",
            json={"answers": [{"question_id": stray["id"], "answer": "x = 2"}]},
            headers=student_headers,
        )
        assert response.status_code == 400
        listed = await client.get("/api/education/sessions", headers=student_headers)
        assert listed.json()[0]["status"] == "in_progress"


class TestSessionService:

    async def test_window_enforced(self, db, student):
        exam = Exam(
            title="Later", subject_id="math", duration_minutes=10,
            start_date=datetime.utcnow() + timedelta(days=1), max_attempts=1,
        )
        db.add(exam)
        await db.commit()
        with pytest.raises(InvalidStateError) as exc_info:
            await exam_service.start_exam(db, exam.id, student.id)
        assert exc_info.value.message == "Exam is not open yet"

    async def test_elapsed_time_accumulates_only_while_running(self, db, student):
        exam = Exam(title="Timed", subject_id="math", duration_minutes=10, max_attempts=1)
        db.add(exam)
        await db.commit()

        t0 = datetime(2026, 1, 1, 10, 0, 0)
        session = await exam_service.start_exam(db, exam.id, student.id, now=t0)
        session = await exam_service.pause_exam(db, session.id, student.id, now=t0 + timedelta(seconds=90))
        assert session.elapsed_seconds == pytest.approx(90)

        session = await exam_service.resume_exam(db, session.id, student.id, now=t0 + timedelta(seconds=600))
        result = await exam_service.submit_exam(db, session.id, student.id, [], now=t0 + timedelta(seconds=630))
        assert result["status"] == "graded"

        stored = await db.get(ExamSession, session.id, populate_existing=True)
        assert stored.elapsed_seconds == pytest.approx(120)

    async def test_partial_index_rejects_second_live_row(self, db, student):
        exam = Exam(title="Unique", subject_id="math", duration_minutes=10, max_attempts=3)
        db.add(exam)
        await db.commit()
        db.add(ExamSession(exam_id=exam.id, student_id=student.id, status=ExamSessionStatus.in_progress))
        await db.commit()

        db.add(ExamSession(exam_id=exam.id, student_id=student.id, status=ExamSessionStatus.paused))
        with pytest.raises(IntegrityError):
            await db.commit()
        await db.rollback()

        db.add(ExamSession(exam_id=exam.id, student_id=student.id, status=ExamSessionStatus.graded))
        await db.commit()
        result = await db.execute(select(ExamSession).where(ExamSession.exam_id == exam.id))
        assert len(result.scalars().all()) == 2
