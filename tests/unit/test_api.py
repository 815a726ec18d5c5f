"""
Unit Tests - HTTP API
"""
import pytest
from httpx import ASGITransport, AsyncClient

from ljk_analytics.main import app
from ljk_analytics.serving.api.dependencies import get_aggregate_sessions, get_updater

REPORT_PATH = "/api/v1/exams/uts-2025/schools/sch-001/grades/k7/subjects/mtk"


@pytest.fixture
async def client(session_factory, updater):
    app.dependency_overrides[get_aggregate_sessions] = lambda: session_factory
    app.dependency_overrides[get_updater] = lambda: updater

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def sheet(answers):
    return {
        "schoolId": "sch-001",
        "gradeId": "k7",
        "subjectId": "mtk",
        "studentAnswers": {q: {"selected": s, "isCorrect": c} for q, (s, c) in answers.items()},
    }


class TestEventEndpoints:
    """Tests for the HTTP event interface"""

    async def test_user_created(self, client):
        response = await client.post("/api/v1/events/users/u1", json={"role": "teacher", "schoolId": "sch-001"})

        assert response.status_code == 202
        body = response.json()
        assert body["event_key"] == "users/u1"
        assert {r["name"]: r["status"] for r in body["results"]} == {
            "dashboard": "applied",
            "school_teacher": "applied",
        }

        school = await client.get("/api/v1/schools/sch-001/stats")
        assert school.json()["total_teacher"] == 1

    async def test_user_created_without_body(self, client):
        response = await client.post("/api/v1/events/users/u2")

        assert response.status_code == 202
        dashboard = await client.get("/api/v1/dashboard")
        assert dashboard.json()["total_user"] == 1

    async def test_answer_sheet_redelivery(self, client):
        path = "/api/v1/events/exams/uts-2025/answers/a1"
        payload = sheet({"1": ("A", True)})

        first = await client.post(path, json=payload)
        second = await client.post(path, json=payload)

        assert first.status_code == second.status_code == 202
        assert {r["status"] for r in second.json()["results"]} == {"duplicate"}

    async def test_non_object_body_rejected(self, client):
        response = await client.post("/api/v1/events/exams/uts-2025/answers/a1", json=["A", "B"])

        assert response.status_code == 422

    async def test_unreadable_answers_still_counted(self, client):
        response = await client.post(
            "/api/v1/events/exams/uts-2025/answers/a1",
            json={**sheet({}), "studentAnswers": "not-a-map"},
        )

        assert response.status_code == 202
        assert {r["name"]: r["status"] for r in response.json()["results"]} == {
            "ljk_total": "applied",
            "grade_subject": "skipped",
        }
        assert (await client.get("/api/v1/dashboard")).json()["total_ljk"] == 1


class TestReadEndpoints:
    """Tests for dashboard and report endpoints"""

    async def test_dashboard_defaults_to_empty(self, client):
        response = await client.get("/api/v1/dashboard", params={"days": 7})

        assert response.status_code == 200
        body = response.json()
        assert (body["total_user"], body["total_ljk"], body["growth"]) == (0, 0, [])

    async def test_dashboard_rejects_bad_window(self, client):
        response = await client.get("/api/v1/dashboard", params={"days": 0})

        assert response.status_code == 422

    async def test_report_not_found_before_first_sheet(self, client):
        response = await client.get(f"{REPORT_PATH}/report")

        assert response.status_code == 404

    async def test_report(self, client):
        await client.post("/api/v1/events/exams/uts-2025/answers/a1", json=sheet({"1": ("A", True), "2": ("B", False)}))
        await client.post("/api/v1/events/exams/uts-2025/answers/a2", json=sheet({"1": ("", False), "2": ("C", True)}))

        stats = await client.get(f"{REPORT_PATH}/stats")
        assert stats.json()["detail"]["1"] == {"blank": 1, "correct": 1, "incorrect": 0, "choices": {"A": 1}}

        response = await client.get(f"{REPORT_PATH}/report")
        assert response.status_code == 200
        report = response.json()
        assert report["total_answer"] == 2
        assert [q["question_number"] for q in report["questions"]] == [1, 2]
        assert report["questions"][0]["correct_pct"] == 50.0
        assert report["questions"][0]["difficulty"] == "Medium"

    async def test_report_with_answer_key(self, client):
        await client.post("/api/v1/events/exams/uts-2025/answers/a1", json=sheet({"1": ("A", True)}))

        response = await client.post(f"{REPORT_PATH}/report", json={"answerKey": {"1": "A"}})

        assert response.status_code == 200
        choices = response.json()["questions"][0]["choices"]
        assert [c["choice"] for c in choices if c["is_key"]] == ["A"]


class TestOperationalEndpoints:
    """Tests for health, metrics and response headers"""

    async def test_liveness(self, client):
        response = await client.get("/api/v1/health/live")

        assert response.status_code == 200
        assert response.json() == {"status": "alive"}

    async def test_security_headers(self, client):
        response = await client.get("/api/v1/health/live")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "X-Request-ID" in response.headers

    async def test_metrics_exposition(self, client):
        await client.post("/api/v1/events/users/u1", json={})

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "ljk_sub_updates_total" in response.text

    async def test_request_id_propagated(self, client):
        response = await client.get("/api/v1/health/live", headers={"X-Request-ID": "scan-42"})

        assert response.headers["X-Request-ID"] == "scan-42"

    async def test_event_acknowledgements_not_cached(self, client):
        response = await client.post("/api/v1/events/users/u1", json={})

        assert response.headers["Cache-Control"] == "no-store"

    async def test_request_metrics_use_route_templates(self, client):
        await client.post("/api/v1/events/users/u7", json={})

        response = await client.get("/metrics")

        assert 'route="/api/v1/events/users/{user_id}"' in response.text
        assert "/users/u7" not in response.text
