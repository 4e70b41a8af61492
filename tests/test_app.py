import io
from unittest.mock import MagicMock, patch

import pytest
import requests

import mealshare
from mealshare import EMPTY_SHEET_WARNING, SYNC_ERROR_MESSAGE, create_app


SHEET_URL = "https://docs.google.com/spreadsheets/d/e/abc/pub?output=csv"
MIXED_SHEET = "\n".join(
    [
        "Date,A,B,Tot / day",
        "Total,3,2,5",
        "",
        "Meal Details,Cost,Available Balance",
        "A,150,-30",
        "B,100,20",
        "Mil rate,50",
    ]
)
SIMPLE_LIST = "Name,Meals,Paid\nAlice,10,300\nBob,10,100"


@pytest.fixture()
def app():
    app = create_app({"TESTING": True, "SECRET_KEY": "test", "SHEET_CSV_URL": "", "ENABLE_AI_REMINDERS": False})
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


def sheet_response(text):
    mock_response = MagicMock()
    mock_response.raise_for_status.return_value = None
    mock_response.content = text.encode("utf-8")
    return mock_response


def test_health_reports_configuration(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.get_json() == {"ok": True, "sheet_configured": False, "ai_reminders": False}


def test_sync_merges_contacts_and_computes_balances(client):
    with patch("requests.get", return_value=sheet_response(MIXED_SHEET)) as mock_get:
        response = client.post(
            "/api/sheet/sync",
            json={"csv_url": SHEET_URL, "contacts": [{"sheetName": "a", "email": "A.Person@mail.com"}]},
        )

    assert response.status_code == 200
    mock_get.assert_called_once_with(SHEET_URL, timeout=30.0)
    data = response.get_json()
    assert data["extracted_rate"] == 50
    assert data["meal_rate"] == 50
    assert data["has_contribution"] is True
    assert [person["email"] for person in data["people"]] == ["a.person@mail.com", "b@example.com"]
    assert [(row["name"], row["balance"], row["status"]) for row in data["balances"]] == [
        ("A", -30, "OWES"),
        ("B", 20, "OWED"),
    ]
    assert "warning" not in data


def test_sync_uses_stored_rate_only_when_sheet_has_none(client):
    with patch("requests.get", return_value=sheet_response(SIMPLE_LIST)):
        data = client.post("/api/sheet/sync", json={"csv_url": SHEET_URL, "stored_rate": "25"}).get_json()

    assert data["extracted_rate"] is None
    assert data["meal_rate"] == 25
    assert [row["balance"] for row in data["balances"]] == [-150, 50]

    with patch("requests.get", return_value=sheet_response(MIXED_SHEET)):
        data = client.post("/api/sheet/sync", json={"csv_url": SHEET_URL, "stored_rate": 25}).get_json()

    assert data["meal_rate"] == 50


def test_sync_falls_back_to_configured_sheet_url():
    app = create_app({"TESTING": True, "SHEET_CSV_URL": SHEET_URL, "SHEET_FETCH_TIMEOUT": 5})
    client = app.test_client()

    with patch("requests.get", return_value=sheet_response(MIXED_SHEET)) as mock_get:
        response = client.post("/api/sheet/sync")

    assert response.status_code == 200
    mock_get.assert_called_once_with(SHEET_URL, timeout=5)
    assert client.get("/health").get_json()["sheet_configured"] is True


def test_sync_requires_url(client):
    response = client.post("/api/sheet/sync", json={})

    assert response.status_code == 400
    assert response.get_json() == {"error": "CSV URL is required"}


def test_sync_rejects_malformed_url(client):
    with patch("requests.get") as mock_get:
        response = client.post("/api/sheet/sync", json={"csv_url": "not a url"})

    assert response.status_code == 400
    assert response.get_json() == {"error": "Invalid URL format"}
    mock_get.assert_not_called()


def test_sync_rejects_non_object_body(client):
    response = client.post("/api/sheet/sync", json=["csv_url"])

    assert response.status_code == 400


@pytest.mark.parametrize(
    "contacts",
    [
        5,
        "alice@mail.com",
        {"A": 5},
        [{"sheetName": 5, "email": "a@mail.com"}],
        [{"name": "A", "email": ["a@mail.com"]}],
    ],
)
def test_sync_rejects_malformed_contacts_before_fetching(client, contacts):
    with patch("requests.get") as mock_get:
        response = client.post("/api/sheet/sync", json={"csv_url": SHEET_URL, "contacts": contacts})

    assert response.status_code == 400
    assert "contacts" in response.get_json()["error"]
    mock_get.assert_not_called()


def test_sync_rejects_non_string_url(client):
    response = client.post("/api/sheet/sync", json={"csv_url": 5})

    assert response.status_code == 400
    assert response.get_json() == {"error": "Invalid URL format"}


def test_sync_reports_transport_failure(client):
    with patch("requests.get", side_effect=requests.exceptions.ConnectionError("connection refused")):
        response = client.post("/api/sheet/sync", json={"csv_url": SHEET_URL})

    assert response.status_code == 502
    data = response.get_json()
    assert data["error"] == SYNC_ERROR_MESSAGE
    assert "connection refused" in data["detail"]


def test_sync_reports_http_error_status(client):
    failing = MagicMock()
    failing.raise_for_status.side_effect = requests.exceptions.HTTPError("403 Client Error: Forbidden")

    with patch("requests.get", return_value=failing):
        response = client.post("/api/sheet/sync", json={"csv_url": SHEET_URL})

    assert response.status_code == 502


def test_sync_warns_when_sheet_has_no_usable_data(client):
    with patch("requests.get", return_value=sheet_response("foo,bar\nbaz,qux")):
        response = client.post("/api/sheet/sync", json={"csv_url": SHEET_URL})

    assert response.status_code == 200
    data = response.get_json()
    assert data["people"] == []
    assert data["has_contribution"] is False
    assert data["warning"] == EMPTY_SHEET_WARNING


def test_parse_uploaded_csv_file(client):
    response = client.post(
        "/api/sheet/parse",
        data={
            "file": (io.BytesIO(MIXED_SHEET.encode("cp1252")), "sheet.csv"),
            "contacts": '[{"sheetName": "B", "email": "b@mail.com"}]',
        },
        content_type="multipart/form-data",
    )

    assert response.status_code == 200
    data = response.get_json()
    assert [person["email"] for person in data["people"]] == ["a@example.com", "b@mail.com"]
    assert data["meal_rate"] == 50


def test_parse_rejects_bad_contacts_json(client):
    response = client.post(
        "/api/sheet/parse",
        data={"file": (io.BytesIO(MIXED_SHEET.encode("utf-8")), "sheet.csv"), "contacts": "{oops"},
        content_type="multipart/form-data",
    )

    assert response.status_code == 400


def test_parse_csv_text_body(client):
    response = client.post("/api/sheet/parse", json={"csv_text": SIMPLE_LIST})

    data = response.get_json()
    assert response.status_code == 200
    assert data["meal_rate"] == 20
    assert [row["status"] for row in data["balances"]] == ["OWES", "OWED"]


def test_parse_rejects_malformed_body_fields(client):
    assert client.post("/api/sheet/parse", json={"csv_text": 5}).status_code == 400
    assert client.post("/api/sheet/parse", json={"csv_text": SIMPLE_LIST, "contacts": 5}).status_code == 400
    upload = client.post(
        "/api/sheet/parse",
        data={"file": (io.BytesIO(SIMPLE_LIST.encode("utf-8")), "sheet.csv"), "contacts": "5"},
        content_type="multipart/form-data",
    )
    assert upload.status_code == 400


def test_parse_requires_file_or_text(client):
    response = client.post("/api/sheet/parse", json={})

    assert response.status_code == 400
    assert response.get_json() == {"error": "Upload a CSV file or send csv_text."}


def test_reminders_use_templates_when_ai_disabled(client):
    with patch("requests.get", return_value=sheet_response(MIXED_SHEET)):
        response = client.post(
            "/api/reminders",
            json={
                "csv_url": SHEET_URL,
                "threshold": 0,
                "contacts": {"A": "a@mail.com"},
            },
        )

    assert response.status_code == 200
    data = response.get_json()
    assert data["threshold"] == 0
    assert data["tone"] == "friendly"
    assert [(r["name"], r["email"], r["amount_owed"], r["message"]) for r in data["reminders"]] == [
        ("A", "a@mail.com", 30, "Alert: Balance is -30.00. Please add money."),
    ]


def test_reminders_reject_non_string_tone(client):
    with patch("requests.get") as mock_get:
        response = client.post("/api/reminders", json={"csv_url": SHEET_URL, "tone": 5})

    assert response.status_code == 400
    assert response.get_json() == {"error": "tone must be a string"}
    mock_get.assert_not_called()


def test_reminders_ask_gemini_when_enabled(monkeypatch):
    app = create_app(
        {
            "TESTING": True,
            "ENABLE_AI_REMINDERS": True,
            "GEMINI_API_KEY": "test-key",
            "GEMINI_MODEL": "test-model",
            "REMINDER_THRESHOLD": 100,
        }
    )
    fake_client = MagicMock()
    fake_client.models.generate_content.return_value.text = (
        '[{"person_id": "sheet-summary-4", "message": "Pay 30 please."},'
        ' {"person_id": "sheet-summary-5", "message": "Top up soon."}]'
    )
    requested_keys = []

    def fake_build_client(api_key):
        requested_keys.append(api_key)
        return fake_client

    monkeypatch.setattr(mealshare, "build_gemini_client", fake_build_client)

    with patch("requests.get", return_value=sheet_response(MIXED_SHEET)):
        response = app.test_client().post("/api/reminders", json={"csv_url": SHEET_URL, "tone": "firm"})

    data = response.get_json()
    assert requested_keys == ["test-key"]
    assert [r["message"] for r in data["reminders"]] == ["Pay 30 please.", "Top up soon."]
    kwargs = fake_client.models.generate_content.call_args.kwargs
    assert kwargs["model"] == "test-model"
    assert "Tone: firm." in kwargs["contents"]


def test_sync_sheet_helper_is_exposed_on_app(app):
    with patch("requests.get", return_value=sheet_response(MIXED_SHEET)):
        payload = app.sync_sheet({"csv_url": SHEET_URL})

    assert payload["total_meals"] == 5
    assert payload["total_contribution"] == 240
