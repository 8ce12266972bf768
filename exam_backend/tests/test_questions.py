"""
Question bank: validation, listing with cache, CSV import, search and
the ML-backed student endpoints.
"""
import json

from exam_backend.errors import ErrorCode
from exam_backend.services.cache_service import questions_key
from exam_backend.services.ml_service import difficulty_level, predict_difficulty
from exam_backend.tests.conftest import ALGEBRA_QUESTION, create_question

CSV_HEADER = "subjectId,subcategoryId,type,content,options,correctAnswer,points,difficulty,explanation"


class TestCreateQuestion:

    async def test_teacher_creates_question(self, client, teacher_headers, teacher):
        question = await create_question(client, teacher_headers)
        assert question["subject_id"] == "math"
        assert question["subcategory_id"] == "algebra"
        assert question["created_by"] == teacher.id
        assert question["correct_answer"] == "x = 2"

    async def test_subcategory_must_belong_to_subject(self, client, teacher_headers):
        response = await client.post(
            "/api/questions", json={**ALGEBRA_QUESTION, "subcategory_id": "grammar"}, headers=teacher_headers
        )
        assert response.status_code == 400
        assert response.json()["code"] == ErrorCode.INVALID_SUBJECT

    async def test_unknown_subject(self, client, teacher_headers):
        response = await client.post(
            "/api/questions", json={**ALGEBRA_QUESTION, "subject_id": "history"}, headers=teacher_headers
        )
        assert response.status_code == 400

    async def test_answer_must_be_an_option(self, client, teacher_headers):
        response = await client.post(
            "/api/questions", json={**ALGEBRA_QUESTION, "correct_answer": "x = 9"}, headers=teacher_headers
        )
        assert response.status_code == 400

    async def test_points_must_be_positive(self, client, teacher_headers):
        response = await client.post("/api/questions", json={**ALGEBRA_QUESTION, "points": 0}, headers=teacher_headers)
        assert response.status_code == 400

    async def test_difficulty_zero_is_rejected(self, client, teacher_headers):
        response = await client.post(
            "/api/questions", json={**ALGEBRA_QUESTION, "difficulty": 0}, headers=teacher_headers
        )
        assert response.status_code == 400
        assert response.json()["details"] == {"difficulty": 0}

    async def test_true_false_normalized(self, client, teacher_headers):
        question = await create_question(
            client, teacher_headers, type="true_false", options=None, correct_answer="TRUE", content="1 + 1 = 2"
        )
        assert question["correct_answer"] == "true"
        assert question["options"] == ["true", "false"]

    async def test_students_cannot_create(self, client, student_headers):
        response = await client.post("/api/questions", json=ALGEBRA_QUESTION, headers=student_headers)
        assert response.status_code == 403
        assert response.json()["message"] == "Permission denied"

    async def test_student_does_not_see_answer(self, client, teacher_headers, student_headers):
        question = await create_question(client, teacher_headers)
        response = await client.get(f"/api/questions/{question['id']}", headers=student_headers)
        assert response.status_code == 200
        assert "correct_answer" not in response.json()

    async def test_missing_question(self, client, teacher_headers):
        response = await client.get("/api/questions/9999", headers=teacher_headers)
        assert response.status_code == 404
        assert response.json()["code"] == ErrorCode.NOT_FOUND


class TestListingCache:

    async def test_listing_is_cached_and_invalidated_on_create(self, client, teacher_headers, mock_redis):
        await create_question(client, teacher_headers)
        params = {"subject_id": "math", "subcategory_id": "algebra"}

        first = await client.get("/api/education/questions", params=params, headers=teacher_headers)
        assert len(first.json()) == 1
        key = "exam-" + questions_key("math", "algebra")
        assert len(json.loads(mock_redis.store[key])) == 1
        assert mock_redis.ttls[key] == 3600

        await create_question(client, teacher_headers, content="Solve 3x = 9",
                              options=["x = 3", "x = 4"], correct_answer="x = 3")
        assert key not in mock_redis.store

        second = await client.get("/api/education/questions", params=params, headers=teacher_headers)
        assert len(second.json()) == 2

    async def test_student_listing_strips_answers(self, client, teacher_headers, student_headers):
        await create_question(client, teacher_headers)
        params = {"subject_id": "math", "subcategory_id": "algebra"}
        await client.get("/api/education/questions", params=params, headers=teacher_headers)

        response = await client.get("/api/education/questions", params=params, headers=student_headers)
        assert "correct_answer" not in response.json()[0]

    async def test_flush_requires_admin(self, client, teacher_headers, admin_headers, mock_redis):
        mock_redis.store["exam-anything"] = "1"
        mock_redis.store["other-app"] = "1"
        assert (await client.post("/api/education/cache/flush", headers=teacher_headers)).status_code == 403

        response = await client.post("/api/education/cache/flush", headers=admin_headers)
        assert response.json() == {"success": True, "removed": 1}
        assert "other-app" in mock_redis.store


class TestCsvImport:

    async def test_rows_reported_individually(self, client, teacher_headers):
        content = "\n".join([
            CSV_HEADER,
            'math,algebra,multiple_choice,Solve x + 1 = 2,x = 1|x = 2,x = 1,5,2,',
            'math,grammar,essay,Bad pair,,,5,3,',
            'communication,grammar,true_false,"Nouns name things",,true,2,1,',
            'math,geometry,multiple_choice,Angles in a triangle,90|180,180,abc,3,',
        ])
        response = await client.post(
            "/api/education/questions/import",
            files={"file": ("questions.csv", content.encode("utf-8"), "text/csv")},
            headers=teacher_headers,
        )
        assert response.status_code == 200, response.text
        data = response.json()
        assert data["imported"] == 2
        assert data["failed"] == 2
        assert [r["success"] for r in data["results"]] == [True, False, True, False]
        assert [r["row"] for r in data["results"]] == [2, 3, 4, 5]

        search = await client.get("/api/education/questions/search", params={"subject_id": "math"},
                                  headers=teacher_headers)
        assert [q["content"] for q in search.json()] == ["Solve x + 1 = 2"]

    async def test_wrong_header(self, client, teacher_headers):
        response = await client.post(
            "/api/education/questions/import",
            files={"file": ("questions.csv", b"a,b,c\n1,2,3", "text/csv")},
            headers=teacher_headers,
        )
        assert response.status_code == 400
        assert "missing_columns" in response.json()["details"]


class TestSearchAndStats:

    async def test_search_filters(self, client, teacher_headers):
        await create_question(client, teacher_headers, difficulty=1, content="Easy linear equation")
        await create_question(client, teacher_headers, difficulty=5, content="Hard system of equations")
        await create_question(client, teacher_headers, subcategory_id="geometry", content="Triangle area",
                              options=["bh/2", "bh"], correct_answer="bh/2")

        by_text = await client.get("/api/education/questions/search", params={"search": "equation"},
                                   headers=teacher_headers)
        assert len(by_text.json()) == 2

        by_difficulty = await client.get("/api/education/questions/search",
                                         params={"subcategory_id": "algebra", "difficulty": 5},
                                         headers=teacher_headers)
        assert [q["content"] for q in by_difficulty.json()] == ["Hard system of equations"]

        limited = await client.get("/api/education/questions/search", params={"limit": 1}, headers=teacher_headers)
        assert len(limited.json()) == 1

    async def test_unknown_type_filter(self, client, teacher_headers):
        response = await client.get("/api/education/questions/search", params={"type": "bogus"},
                                    headers=teacher_headers)
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid question type"
        assert "essay" in response.json()["details"]["allowed"]

    async def test_subject_statistics(self, client, teacher_headers):
        await create_question(client, teacher_headers, points=4)
        await create_question(client, teacher_headers, points=8, type="true_false", options=None,
                              correct_answer="false", content="0 > 1")
        response = await client.get("/api/education/questions/stats", params={"subject_id": "math"},
                                    headers=teacher_headers)
        stats = response.json()
        assert stats["total_questions"] == 2
        assert stats["average_points"] == 6
        assert stats["min_points"] == 4
        assert stats["max_points"] == 8
        assert stats["question_types"] == {"multiple_choice": 1, "true_false": 1}

    async def test_random_exam(self, client, teacher_headers, student_headers):
        for index in range(3):
            await create_question(client, teacher_headers, content=f"Question {index}")
        response = await client.get("/api/education/questions/random-exam",
                                    params={"subject_id": "math", "count": 2}, headers=student_headers)
        assert len(response.json()) == 2
        assert all("correct_answer" not in q for q in response.json())

    async def test_subjects_catalog(self, client, student_headers):
        response = await client.get("/api/education/subjects", headers=student_headers)
        subjects = {s["id"]: s for s in response.json()}
        assert set(subjects) == {"math", "communication"}


class TestStudentLearning:

    async def test_check_answer_updates_profile(self, client, teacher_headers, student_headers, student):
        question = await create_question(client, teacher_headers)
        response = await client.post("/api/questions/check-answer",
                                     json={"question_id": question["id"], "answer": "x = 2"},
                                     headers=student_headers)
        data = response.json()
        assert data["is_correct"] is True
        assert data["explanation"] == "Subtract 3, then divide by 2"
        assert data["profile"]["performance"]["algebra"] == 0.65

        adaptive = await client.get(f"/api/questions/adaptive/{student.id}/algebra", headers=student_headers)
        body = adaptive.json()
        assert body["performance"] == 0.65
        assert body["difficulty_level"] == difficulty_level(predict_difficulty(0.65))
        assert body["next_question"]["id"] == question["id"]

    async def test_recommendations_within_one_level(self, client, teacher_headers, student_headers):
        for difficulty in (1, 2, 3, 4, 5):
            await create_question(client, teacher_headers, difficulty=difficulty, content=f"Level {difficulty}")
        response = await client.get("/api/education/questions/recommendations",
                                    params={"subject_id": "math", "subcategory_id": "algebra"},
                                    headers=student_headers)
        data = response.json()
        level = data["difficulty_level"]
        assert level == difficulty_level(predict_difficulty(0.0))
        assert data["questions"]
        assert all(abs(q["difficulty"] - level) <= 1 for q in data["questions"])

    async def test_students_only_read_their_own_data(self, client, student_headers, student, teacher_headers):
        response = await client.get(f"/api/questions/badges/{student.id + 100}", headers=student_headers)
        assert response.status_code == 403

        own = await client.get(f"/api/questions/badges/{student.id}", headers=student_headers)
        assert len(own.json()["badges"]) == 2

        staff = await client.get(f"/api/education/questions/{student.id}/patterns", headers=teacher_headers)
        assert staff.status_code == 200
        assert staff.json()["topics"] == {}
