"""
Generated documents: PDF reports, the group workbook, the admin CSV and
the class ranking that feeds from the same graded sessions.
"""
import csv
import io
from datetime import datetime, timedelta

import pytest_asyncio
from openpyxl import load_workbook

from exam_backend.services.report_service import ADMIN_REPORT_COLUMNS, RESULT_COLUMNS, score_stats
from exam_backend.tests.conftest import DEFAULT_PASSWORD, create_exam, create_question


@pytest_asyncio.fixture
async def graded_exam(client, teacher_headers, student_headers):
    question = await create_question(client, teacher_headers)
    exam = await create_exam(client, teacher_headers, [question["id"]])
    started = await client.post(f"/api/education/exams/{exam['id']}/start", headers=student_headers)
    session_id = started.json()["session"]["id"]
    submitted = await client.post(
        f"/api/education/exams/{session_id}/submit",
        json={"answers": [{"question_id": question["id"], "answer": "x = 2"}]},
        headers=student_headers,
    )
    assert submitted.status_code == 200, submitted.text
    return exam


class TestScoreStats:

    def test_empty(self):
        assert score_stats([]) == {"average": 0.0, "std_dev": 0.0, "max": 0.0, "min": 0.0}

    def test_population_deviation(self):
        assert score_stats([100.0, 50.0, 0.0]) == {"average": 50.0, "std_dev": 40.82, "max": 100.0, "min": 0.0}


class TestStudentReports:

    async def test_exam_report_is_pdf(self, client, teacher_headers, student_profile, graded_exam):
        response = await client.get(
            f"/api/education/reports/students/{student_profile.id}/exams/{graded_exam['id']}",
            headers=teacher_headers,
        )
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert "attachment" in response.headers["content-disposition"]
        assert response.content.startswith(b"%PDF")

    async def test_exam_report_without_session(self, client, teacher_headers, student_profile):
        question = await create_question(client, teacher_headers)
        exam = await create_exam(client, teacher_headers, [question["id"]])
        response = await client.get(
            f"/api/education/reports/students/{student_profile.id}/exams/{exam['id']}",
            headers=teacher_headers,
        )
        assert response.status_code == 404

    async def test_history_report(self, client, teacher_headers, student_profile, graded_exam):
        response = await client.get(
            f"/api/education/reports/students/{student_profile.id}/history", headers=teacher_headers
        )
        assert response.content.startswith(b"%PDF")

    async def test_unknown_student(self, client, teacher_headers):
        response = await client.get("/api/education/reports/students/9999/history", headers=teacher_headers)
        assert response.status_code == 404

    async def test_students_cannot_download(self, client, student_headers, student_profile):
        response = await client.get(
            f"/api/education/reports/students/{student_profile.id}/history", headers=student_headers
        )
        assert response.status_code == 403

    async def test_performance_chart(self, client, teacher_headers, graded_exam):
        response = await client.get(
            f"/api/education/reports/exams/{graded_exam['id']}/performance", headers=teacher_headers
        )
        assert response.status_code == 200
        assert response.content.startswith(b"%PDF")

    async def test_markup_characters_in_content_and_answers(
        self, client, teacher_headers, student_headers, student_profile
    ):
        comparison = await create_question(
            client, teacher_headers, content="Is a<b and <x> valid", options=["a<b", "b<a"], correct_answer="a<b"
        )
        essay = await create_question(
            client, teacher_headers, type="essay", options=None, correct_answer=None, content="Explain x & y"
        )
        exam = await create_exam(
            client, teacher_headers, [comparison["id"], essay["id"]], title="Bounds <quiz> & more"
        )
        started = await client.post(f"/api/education/exams/{exam['id']}/start", headers=student_headers)
        session_id = started.json()["session"]["id"]
        submitted = await client.post(
            f"/api/education/exams/{session_id}/submit",
            json={"answers": [
                {"question_id": comparison["id"], "answer": "a<b"},
                {"question_id": essay["id"], "answer": "<b"},
            ]},
            headers=student_headers,
        )
        assert submitted.status_code == 200, submitted.text

        urls = [
            f"/api/education/reports/students/{student_profile.id}/exams/{exam['id']}",
            f"/api/education/reports/students/{student_profile.id}/history",
            f"/api/education/reports/exams/{exam['id']}/performance",
        ]
        for url in urls:
            response = await client.get(url, headers=teacher_headers)
            assert response.status_code == 200, url
            assert response.content.startswith(b"%PDF")


class TestGroupWorkbook:

    async def test_sheets_and_statistics(self, client, admin_headers, teacher_headers, student_profile, graded_exam):
        group = await client.post("/api/admin/groups", json={"name": "5A"}, headers=admin_headers)
        group_id = group.json()["id"]
        await client.post(f"/api/admin/groups/{group_id}/students",
                          json={"student_ids": [student_profile.id]}, headers=admin_headers)

        response = await client.get(
            f"/api/education/reports/groups/{group_id}/exams/{graded_exam['id']}", headers=teacher_headers
        )
        assert response.status_code == 200
        workbook = load_workbook(io.BytesIO(response.content))
        assert workbook.sheetnames == ["Resultados", "Estadísticas"]

        results = list(workbook["Resultados"].iter_rows(values_only=True))
        assert list(results[0]) == RESULT_COLUMNS
        assert results[1][0] == "Ana Torres"
        assert results[1][2] == "graded"
        assert results[1][5] == 100

        stats = {row[0]: row[1] for row in workbook["Estadísticas"].iter_rows(min_row=2, values_only=True)}
        assert stats == {"Promedio": 100, "Desviación Estándar": 0, "Máximo": 100, "Mínimo": 100}

    async def test_unknown_group(self, client, teacher_headers, graded_exam):
        response = await client.get(
            f"/api/education/reports/groups/9999/exams/{graded_exam['id']}", headers=teacher_headers
        )
        assert response.status_code == 404


class TestAdminReport:

    async def test_login_counts(self, client, admin, super_admin, teacher, super_admin_headers):
        for _ in range(2):
            response = await client.post("/api/auth/login", json={"email": admin.email, "password": DEFAULT_PASSWORD})
            assert response.status_code == 200
        await client.post("/api/auth/login", json={"email": admin.email, "password": "wrong-password"})
        await client.post("/api/auth/login", json={"email": teacher.email, "password": DEFAULT_PASSWORD})

        response = await client.get("/api/reports/admin", headers=super_admin_headers)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")

        rows = list(csv.reader(io.StringIO(response.text)))
        assert rows[0] == ADMIN_REPORT_COLUMNS
        counts = {row[2]: int(row[4]) for row in rows[1:]}
        assert counts == {admin.email: 2, super_admin.email: 0}

    async def test_range_excludes_logins(self, client, admin, super_admin_headers):
        await client.post("/api/auth/login", json={"email": admin.email, "password": DEFAULT_PASSWORD})
        end = datetime.utcnow() - timedelta(days=1)
        response = await client.get(
            "/api/reports/admin",
            params={"start_date": (end - timedelta(days=7)).isoformat(), "end_date": end.isoformat()},
            headers=super_admin_headers,
        )
        rows = list(csv.reader(io.StringIO(response.text)))
        assert {row[2]: row[4] for row in rows[1:]}[admin.email] == "0"

    async def test_reversed_range(self, client, super_admin_headers):
        now = datetime.utcnow()
        response = await client.get(
            "/api/reports/admin",
            params={"start_date": now.isoformat(), "end_date": (now - timedelta(days=1)).isoformat()},
            headers=super_admin_headers,
        )
        assert response.status_code == 400

    async def test_requires_report_permission(self, client, teacher_headers, student_headers):
        for headers in (teacher_headers, student_headers):
            response = await client.get("/api/reports/admin", headers=headers)
            assert response.status_code == 403


class TestClassRanking:

    async def test_ranking_by_grade(self, client, student_headers, graded_exam):
        response = await client.get("/api/education/ranking/5A", headers=student_headers)
        ranking = response.json()["ranking"]
        assert len(ranking) == 1
        assert ranking[0]["position"] == 1
        assert ranking[0]["name"] == "Ana Torres"
        assert ranking[0]["score"] == 100.0

        other = await client.get("/api/questions/ranking/class/6B", headers=student_headers)
        assert other.json()["ranking"] == []
