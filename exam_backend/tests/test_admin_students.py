"""
Enrollment, staff account management, groups, scheduling, dashboard and
the audit trail.
"""
from datetime import date, datetime, timedelta

from exam_backend import config
from exam_backend.errors import ErrorCode
from exam_backend.tests.conftest import create_exam, create_question, create_student_account

NEW_STUDENT = {
    "name": "Lucia",
    "last_name": "Quispe",
    "email": "Lucia.Quispe@School.edu",
    "date_of_birth": "2011-08-21",
    "grade_level": "5A",
}


class TestEnrollment:

    async def test_enrolled_student_must_change_password(self, client, admin_headers):
        response = await client.post("/api/students", json=NEW_STUDENT, headers=admin_headers)
        assert response.status_code == 201, response.text
        student = response.json()
        assert student["email"] == "lucia.quispe@school.edu"
        assert student["user_id"] is not None

        login = await client.post(
            "/api/auth/login",
            json={"email": "lucia.quispe@school.edu", "password": config.DEFAULT_STUDENT_PASSWORD},
        )
        assert login.status_code == 200
        assert login.json()["user"]["mustChangePassword"] is True
        assert login.json()["user"]["role"] == "student"

    async def test_duplicate_email(self, client, admin_headers, student):
        response = await client.post(
            "/api/students", json={**NEW_STUDENT, "email": student.email}, headers=admin_headers
        )
        assert response.status_code == 400
        assert response.json()["code"] == ErrorCode.DUPLICATE_EMAIL

    async def test_future_birth_date(self, client, admin_headers):
        future = (date.today() + timedelta(days=365)).isoformat()
        response = await client.post(
            "/api/students", json={**NEW_STUDENT, "date_of_birth": future}, headers=admin_headers
        )
        assert response.status_code == 400

    async def test_invalid_email(self, client, admin_headers):
        response = await client.post(
            "/api/students", json={**NEW_STUDENT, "email": "not-an-email"}, headers=admin_headers
        )
        assert response.status_code == 400
        assert response.json()["code"] == ErrorCode.VALIDATION_ERROR

    async def test_teacher_cannot_enroll_but_can_list(self, client, teacher_headers, student_profile):
        forbidden = await client.post("/api/students", json=NEW_STUDENT, headers=teacher_headers)
        assert forbidden.status_code == 403

        listing = await client.get("/api/students", headers=teacher_headers)
        assert [s["id"] for s in listing.json()] == [student_profile.id]

        detail = await client.get(f"/api/students/{student_profile.id}", headers=teacher_headers)
        assert detail.json()["grade_level"] == "5A"

        missing = await client.get("/api/students/9999", headers=teacher_headers)
        assert missing.status_code == 404

    async def test_enrollment_is_audited(self, client, admin_headers, admin):
        created = await client.post("/api/students", json=NEW_STUDENT, headers=admin_headers)
        logs = await client.get("/api/reports/audit-logs", headers=admin_headers)
        entry = logs.json()[0]
        assert entry["action_type"] == "CREATE_STUDENT"
        assert entry["user_id"] == admin.id
        assert entry["details"] == {"student_id": created.json()["id"]}


class TestStaffAccounts:
    """Only super admins manage staff accounts."""

    async def test_crud(self, client, super_admin_headers, super_admin):
        created = await client.post(
            "/api/admin",
            json={"name": "New Admin", "email": "new.admin@school.edu", "password": "Sup3rSecret"},
            headers=super_admin_headers,
        )
        assert created.status_code == 201
        admin_id = created.json()["id"]
        assert created.json()["role"] == "admin"

        listing = await client.get("/api/admin", headers=super_admin_headers)
        assert {a["email"] for a in listing.json()} == {"root@school.edu", "new.admin@school.edu"}

        updated = await client.put(f"/api/admin/{admin_id}", json={"name": "Renamed"}, headers=super_admin_headers)
        assert updated.json()["name"] == "Renamed"

        empty = await client.put(f"/api/admin/{admin_id}", json={}, headers=super_admin_headers)
        assert empty.status_code == 400

        deleted = await client.delete(f"/api/admin/{admin_id}", headers=super_admin_headers)
        assert deleted.json()["success"] is True
        assert (await client.delete(f"/api/admin/{admin_id}", headers=super_admin_headers)).status_code == 404

        actions = [e["action_type"] for e in (await client.get("/api/reports/audit-logs",
                                                               headers=super_admin_headers)).json()]
        assert actions == ["DELETE_ADMIN", "UPDATE_ADMIN", "CREATE_ADMIN"]

    async def test_cannot_delete_self(self, client, super_admin_headers, super_admin):
        response = await client.delete(f"/api/admin/{super_admin.id}", headers=super_admin_headers)
        assert response.status_code == 400

    async def test_duplicate_and_invalid_role(self, client, super_admin_headers, admin):
        duplicate = await client.post(
            "/api/admin",
            json={"name": "Dup", "email": "ADMIN@school.edu", "password": "Sup3rSecret"},
            headers=super_admin_headers,
        )
        assert duplicate.json()["code"] == ErrorCode.DUPLICATE_EMAIL

        student_role = await client.post(
            "/api/admin",
            json={"name": "X", "email": "x@school.edu", "password": "Sup3rSecret", "role": "student"},
            headers=super_admin_headers,
        )
        assert student_role.status_code == 400

    async def test_admin_role_is_not_enough(self, client, admin_headers):
        response = await client.get("/api/admin", headers=admin_headers)
        assert response.status_code == 403
        assert response.json()["message"] == "Role not authorized"


class TestGroupsAndScheduling:

    async def test_schedule_creates_pending_sessions(self, client, admin_headers, teacher_headers,
                                                     session_factory, student_profile, student_headers):
        _, classmate = await create_student_account(session_factory, "classmate@school.edu", name="Luis")

        group = await client.post("/api/admin/groups", json={"name": "5A"}, headers=admin_headers)
        assert group.status_code == 201
        group_id = group.json()["id"]

        members = await client.post(
            f"/api/admin/groups/{group_id}/students",
            json={"student_ids": [student_profile.id, classmate.id, student_profile.id]},
            headers=admin_headers,
        )
        assert members.json()["student_ids"] == [student_profile.id, classmate.id]

        question = await create_question(client, teacher_headers)
        exam = await create_exam(client, teacher_headers, [question["id"]])
        now = datetime.utcnow()
        body = {
            "exam_id": exam["id"],
            "group_id": group_id,
            "start_date": (now - timedelta(hours=1)).isoformat(),
            "end_date": (now + timedelta(hours=1)).isoformat(),
        }
        scheduled = await client.post("/api/admin/exams/schedule", json=body, headers=admin_headers)
        assert scheduled.status_code == 201
        assert scheduled.json()["sessions_created"] == 2

        again = await client.post("/api/admin/exams/schedule", json=body, headers=admin_headers)
        assert again.json()["sessions_created"] == 0

        sessions = await client.get("/api/education/sessions", headers=student_headers)
        pending = [s for s in sessions.json() if s["exam_id"] == exam["id"]]
        assert [s["status"] for s in pending] == ["not_started"]

        started = await client.post(f"/api/education/exams/{exam['id']}/start", headers=student_headers)
        assert started.json()["session"]["id"] == pending[0]["id"]
        assert started.json()["session"]["status"] == "in_progress"

    async def test_unknown_students_rejected(self, client, admin_headers):
        group = await client.post("/api/admin/groups", json={"name": "5B"}, headers=admin_headers)
        response = await client.post(
            f"/api/admin/groups/{group.json()['id']}/students",
            json={"student_ids": [9999]},
            headers=admin_headers,
        )
        assert response.status_code == 400
        assert response.json()["details"] == {"student_ids": [9999]}

    async def test_schedule_window_must_be_ordered(self, client, admin_headers, teacher_headers):
        group = await client.post("/api/admin/groups", json={"name": "5C"}, headers=admin_headers)
        question = await create_question(client, teacher_headers)
        exam = await create_exam(client, teacher_headers, [question["id"]])
        now = datetime.utcnow()
        response = await client.post("/api/admin/exams/schedule", json={
            "exam_id": exam["id"],
            "group_id": group.json()["id"],
            "start_date": now.isoformat(),
            "end_date": (now - timedelta(hours=1)).isoformat(),
        }, headers=admin_headers)
        assert response.status_code == 400

    async def test_teacher_cannot_manage_groups(self, client, teacher_headers):
        response = await client.post("/api/admin/groups", json={"name": "5D"}, headers=teacher_headers)
        assert response.status_code == 403


class TestTemplates:

    async def test_generate_exam_from_template(self, client, teacher_headers):
        ids = [(await create_question(client, teacher_headers, content=f"Q{i}"))["id"] for i in range(4)]
        template = await client.post("/api/admin/templates", json={
            "name": "Weekly algebra",
            "subject_id": "math",
            "subcategory_id": "algebra",
            "duration_minutes": 20,
            "question_ids": ids,
        }, headers=teacher_headers)
        assert template.status_code == 201, template.text

        exam = await client.post(f"/api/admin/templates/{template.json()['id']}/exams",
                                 json={"count": 3}, headers=teacher_headers)
        assert exam.status_code == 201
        data = exam.json()
        assert data["duration_minutes"] == 20
        assert len(data["questions"]) == 3
        assert {q["id"] for q in data["questions"]} <= set(ids)

    async def test_template_questions_must_match_subject(self, client, teacher_headers):
        question = await create_question(client, teacher_headers)
        response = await client.post("/api/admin/templates", json={
            "name": "Grammar",
            "subject_id": "communication",
            "question_ids": [question["id"]],
        }, headers=teacher_headers)
        assert response.status_code == 400

    async def test_unknown_template(self, client, teacher_headers):
        response = await client.post("/api/admin/templates/9999/exams", json={}, headers=teacher_headers)
        assert response.status_code == 404


class TestDashboard:

    async def test_counts(self, client, admin_headers, teacher_headers, student_profile):
        question = await create_question(client, teacher_headers)
        await create_exam(client, teacher_headers, [question["id"]])

        response = await client.get("/api/admin/dashboard/stats", headers=admin_headers)
        stats = response.json()
        assert stats["total_exams"] == 1
        assert stats["total_students"] == 1
        assert stats["pending_reviews"] == 0
        assert isinstance(stats["recent_activity"], list)

    async def test_teacher_is_rejected(self, client, teacher_headers):
        response = await client.get("/api/admin/dashboard/stats", headers=teacher_headers)
        assert response.status_code == 403

    async def test_audit_logs_require_permission(self, client, teacher_headers):
        response = await client.get("/api/reports/audit-logs", headers=teacher_headers)
        assert response.status_code == 403
