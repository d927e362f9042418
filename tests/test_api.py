from pathlib import Path

from fastapi.testclient import TestClient

from perfstat.api.main import create_app
from perfstat.config import settings

BASE = Path(__file__).resolve().parents[1]
CATALOG_FILE = BASE / "config" / "catalog.yaml"
ROLLUP_FILE = BASE / "config" / "rollup.yaml"

HEADERS = {"X-User-Id": "5", "X-User-Role": "SP", "X-Battalion-Id": "2"}
MONTH = "SEP 2026"


def _client(tmp_path) -> TestClient:
    settings.security.api_token = None
    settings.paths.uploads_dir = tmp_path / "uploads"
    app = create_app(db_path=tmp_path / "perfstat.db", catalog_path=CATALOG_FILE, rollup_path=ROLLUP_FILE)
    return TestClient(app)


def _open(client, module_id, topic_id, companies=()):
    res = client.post(
        "/forms/sessions",
        json={"module_id": module_id, "topic_id": topic_id, "companies": list(companies), "month_year": MONTH},
        headers=HEADERS,
    )
    assert res.status_code == 201, res.text
    return res.json()


def _change(client, session_id, **changes):
    res = client.patch(
        f"/forms/sessions/{session_id}/fields",
        json={"changes": [{"key": key, "value": value} for key, value in changes.items()]},
        headers=HEADERS,
    )
    return res


def test_health(tmp_path):
    client = _client(tmp_path)
    res = client.get("/health")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert (body["modules"], body["rollups"], body["open_sessions"]) == (3, 1, 0)
    assert "x-request-id" in res.headers


def test_performance_envelope(tmp_path):
    client = _client(tmp_path)
    res = client.get("/performance-statistics/performance", params={"module": 1, "topic": 1, "month": MONTH}, headers=HEADERS)
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "SUCCESS"
    data = body["data"]
    assert data["monthYear"] == MONTH
    assert (data["nextTopic"], data["prevTopic"], data["nextModule"], data["isSuccess"]) == (True, False, True, False)
    topic = data["modules"][0]["topicDTOs"][0]
    assert [q["id"] for q in topic["questionDTOs"]] == [101, 102, 103]

    res = client.get("/performance-statistics/performance", params={"module": 1, "ordinal": 2}, headers=HEADERS)
    assert res.json()["data"]["modules"][0]["topicDTOs"][0]["id"] == 2


def test_performance_errors(tmp_path):
    client = _client(tmp_path)
    res = client.get("/performance-statistics/performance", params={"module": 1, "topic": 4}, headers=HEADERS)
    assert res.status_code == 404
    assert res.json()["error"] == "not_found"

    res = client.get("/performance-statistics/performance", params={"module": 1, "ordinal": 9}, headers=HEADERS)
    assert res.status_code == 404

    res = client.get("/performance-statistics/performance", params={"module": 1}, headers=HEADERS)
    assert res.status_code == 422


def test_session_flow(tmp_path):
    client = _client(tmp_path)
    session = _open(client, 1, 1)
    sid = session["session_id"]
    assert session["fields"] == {"q101:value": "", "q102:value": "", "q103:value": "0"}

    res = _change(client, sid, **{"q101:value": "9", "q102:value": "3"})
    assert res.status_code == 200
    body = res.json()
    assert body["fields"]["q103:value"] == "6"
    assert body["updated"] == {"q103:value": "6"}
    assert body["dirty"] is True

    res = client.post(f"/forms/sessions/{sid}/save", headers=HEADERS)
    assert res.json() == {"count": 3, "status": "SAVED", "month_year": MONTH}

    res = client.post(f"/forms/sessions/{sid}/submit", headers=HEADERS)
    assert res.json()["status"] == "SUBMITTED"

    res = client.get("/performance-statistics/performance", params={"module": 1, "topic": 1, "month": MONTH}, headers=HEADERS)
    assert res.json()["data"]["isSuccess"] is True

    res = client.get("/performance-statistics/summary", params={"month": MONTH}, headers=HEADERS)
    assert res.json()["data"]["statuses"]["SUBMITTED"] == {"records": 3, "topics": 1}

    assert client.delete(f"/forms/sessions/{sid}", headers=HEADERS).status_code == 204
    assert client.get(f"/forms/sessions/{sid}", headers=HEADERS).status_code == 404


def test_session_rejects_bad_fields(tmp_path):
    client = _client(tmp_path)
    sid = _open(client, 1, 1)["session_id"]

    res = _change(client, sid, **{"q999:value": "1"})
    assert res.status_code == 422
    assert res.json()["error"] == "invalid_field"

    res = _change(client, sid, **{"not-a-key": "1"})
    assert res.status_code == 422


def test_sessions_are_private_to_their_user(tmp_path):
    client = _client(tmp_path)
    sid = _open(client, 1, 1)["session_id"]

    assert client.get(f"/forms/sessions/{sid}", headers={**HEADERS, "X-User-Id": "6"}).status_code == 404
    assert client.get("/forms/sessions/unknown", headers=HEADERS).status_code == 404
    assert client.get(f"/forms/sessions/{sid}", headers=HEADERS).status_code == 200


def test_company_selection_and_rollup(tmp_path):
    client = _client(tmp_path)
    source = _open(client, 2, 117, companies=[1, 2])
    summary = _open(client, 2, 4, companies=[1, 2])
    assert summary["fields"]["q664:s114:value"] == "0"

    res = _change(client, source["session_id"], **{"c1:q1078:s285:value": "3", "c2:q1078:s285:value": "5"})
    assert res.status_code == 200

    res = client.get(f"/forms/sessions/{summary['session_id']}", headers=HEADERS)
    assert res.json()["fields"]["q664:s114:value"] == "8"

    matrix = _open(client, 3, 5)
    assert "q651:s10:value" in matrix["fields"]
    res = client.put(f"/forms/sessions/{matrix['session_id']}/companies", json={"companies": [1, 2]}, headers=HEADERS)
    fields = res.json()["fields"]
    assert "c2:q651:s10:value" in fields
    assert "q651:s10:value" not in fields


def test_navigation_routes(tmp_path):
    client = _client(tmp_path)

    res = client.get("/performance-statistics/next/1/2", headers=HEADERS)
    assert res.json()["data"] == {"moduleId": 2, "topicId": 4, "isSameModule": False}

    res = client.get("/performance-statistics/previous/2/4", headers=HEADERS)
    assert res.json()["data"] == {"moduleId": 1, "topicId": 2, "isSameModule": False}

    res = client.get("/performance-statistics/next/3/5", headers=HEADERS)
    assert res.status_code == 404
    assert res.json()["error"] == "no_further_content"

    res = client.get("/performance-statistics/navigation-info/1/1", headers=HEADERS)
    data = res.json()["data"]
    assert (data["hasNext"], data["hasPrevious"]) == (True, False)
    assert data["currentPosition"]["position"] == "1 of 2"

    sid = _open(client, 1, 1)["session_id"]
    res = client.get(f"/forms/sessions/{sid}/skip-next", headers=HEADERS)
    assert res.json() == {"module_id": 2, "topic_id": 4, "is_same_module": False}


def test_uploads(tmp_path):
    client = _client(tmp_path)
    res = client.post(
        "/performance-statistics/upload",
        files={"file": ("minutes.pdf", b"%PDF-1.4", "application/pdf")},
        headers=HEADERS,
    )
    assert res.status_code == 200
    assert res.json()["data"]["fileUrl"].startswith("/uploads/performanceDocs/")

    sid = _open(client, 1, 2)["session_id"]
    res = client.post(
        f"/forms/sessions/{sid}/upload",
        params={"key": "q203:pdf"},
        files={"file": ("minutes.pdf", b"%PDF-1.4", "application/pdf")},
        headers=HEADERS,
    )
    assert res.status_code == 200
    url = res.json()["file_url"]
    assert client.get(f"/forms/sessions/{sid}", headers=HEADERS).json()["fields"]["q203:pdf"] == url

    res = client.post(
        f"/forms/sessions/{sid}/upload",
        params={"key": "q201:value"},
        files={"file": ("minutes.pdf", b"%PDF-1.4", "application/pdf")},
        headers=HEADERS,
    )
    assert res.status_code == 422


def test_save_statistics(tmp_path):
    client = _client(tmp_path)
    payload = {
        "performanceStatistics": [
            {"questionId": 101, "value": "4", "topicId": 1, "moduleId": 1, "status": "SAVED"},
            {"questionId": 102, "value": "1", "topicId": 1, "moduleId": 1},
        ]
    }
    res = client.post("/performance-statistics/save-statistics", params={"month": MONTH}, json=payload, headers=HEADERS)
    assert res.status_code == 200
    assert res.json()["data"] == {"count": 2, "status": "SAVED", "monthYear": MONTH}

    session = _open(client, 1, 1)
    assert session["fields"]["q103:value"] == "3"

    payload["performanceStatistics"][0]["topicId"] = 999
    res = client.post("/performance-statistics/save-statistics", json=payload, headers=HEADERS)
    assert res.status_code == 404


def test_api_token_guard(tmp_path, monkeypatch):
    client = _client(tmp_path)
    monkeypatch.setattr(settings.security, "api_token", "secret")

    assert client.get("/performance-statistics/summary", headers=HEADERS).status_code == 401
    assert client.get("/forms/sessions/x", headers=HEADERS).status_code == 401
    res = client.get("/performance-statistics/summary", headers={**HEADERS, "Authorization": "Bearer secret"})
    assert res.status_code == 200
    res = client.get("/performance-statistics/summary", headers={**HEADERS, "X-API-Key": "secret"})
    assert res.status_code == 200
    assert client.get("/health").status_code == 200


def test_oversized_json_body_is_rejected(tmp_path, monkeypatch):
    client = _client(tmp_path)
    monkeypatch.setattr(settings.security, "max_json_kb", 0)

    res = client.post("/forms/sessions", json={"module_id": 1, "topic_id": 1}, headers=HEADERS)
    assert res.status_code == 413
    assert res.json()["error"] == "request_too_large"
