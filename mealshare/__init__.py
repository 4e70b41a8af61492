import json
import os
from urllib.parse import urlparse

from flask import Flask, abort, jsonify, request
from werkzeug.exceptions import HTTPException

from .balances import (
    balance_status,
    build_contact_lookup,
    compute_balances,
    merge_contact_emails,
    resolve_effective_rate,
    resolve_meal_rate,
)
from .reminders import DEFAULT_GEMINI_MODEL, build_gemini_client, generate_reminders
from .sheet import (
    SheetFetchError,
    TableKind,
    decode_csv_bytes,
    fetch_sheet_csv,
    fetch_sheet_data,
    parse_float,
    parse_sheet_csv,
    split_csv_line,
)

SYNC_ERROR_MESSAGE = "Error syncing sheet. Check URL or format."
EMPTY_SHEET_WARNING = "Found no valid data in sheet. Check the format."


def env_flag(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def is_valid_sheet_url(value):
    parsed = urlparse(value or "")
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def coerce_number(value):
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return parse_float(value)
    return None


CONTACT_TEXT_KEYS = ("sheet_name", "sheetName", "name", "email")


def is_optional_text(value):
    return value is None or isinstance(value, str)


def is_valid_contacts(contacts):
    if contacts is None:
        return True
    if isinstance(contacts, dict):
        return all(isinstance(name, str) and is_optional_text(email) for name, email in contacts.items())
    if isinstance(contacts, list):
        return all(
            all(is_optional_text(member.get(key)) for key in CONTACT_TEXT_KEYS)
            for member in contacts
            if isinstance(member, dict)
        )
    return False


def create_app(test_config=None):
    app = Flask(__name__)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        SHEET_CSV_URL=os.environ.get("SHEET_CSV_URL", ""),
        SHEET_FETCH_TIMEOUT=float(os.environ.get("SHEET_FETCH_TIMEOUT", "30")),
        GEMINI_API_KEY=os.environ.get("GEMINI_API_KEY", ""),
        GEMINI_MODEL=os.environ.get("GEMINI_MODEL", DEFAULT_GEMINI_MODEL),
        ENABLE_AI_REMINDERS=env_flag("ENABLE_AI_REMINDERS"),
        REMINDER_THRESHOLD=float(os.environ.get("REMINDER_THRESHOLD", "100")),
        REMINDER_TONE=os.environ.get("REMINDER_TONE", "friendly"),
    )

    if test_config is not None:
        app.config.update(test_config)

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return jsonify({"error": exc.description}), exc.code

    @app.errorhandler(SheetFetchError)
    def handle_sheet_fetch_error(exc):
        app.logger.error("Sheet sync failed: %s", exc)
        return jsonify({"error": SYNC_ERROR_MESSAGE, "detail": str(exc)}), 502

    def read_json_body():
        body = request.get_json(silent=True)
        if body is None:
            return {}
        if not isinstance(body, dict):
            abort(400, description="Request body must be a JSON object.")
        return body

    def read_contacts(contacts):
        if not is_valid_contacts(contacts):
            abort(400, description="contacts must map names to emails or list members with text fields")
        return contacts

    def resolve_sheet_url(body):
        csv_url = body.get("csv_url") or app.config.get("SHEET_CSV_URL") or ""
        if not isinstance(csv_url, str):
            abort(400, description="Invalid URL format")
        csv_url = csv_url.strip()
        if not csv_url:
            abort(400, description="CSV URL is required")
        if not is_valid_sheet_url(csv_url):
            abort(400, description="Invalid URL format")
        return csv_url

    def build_sync_payload(result, contacts=None, stored_rate=None):
        people = merge_contact_emails(result["people"], contacts)
        rate = resolve_effective_rate(result["extracted_rate"], stored_rate)
        summary = compute_balances(people, rate)

        payload = {
            "people": people,
            "has_contribution": result["has_contribution"],
            "extracted_rate": result["extracted_rate"],
            "meal_rate": summary["meal_rate"],
            "balances": summary["balances"],
            "total_contribution": summary["total_contribution"],
            "total_meals": summary["total_meals"],
        }
        if not people:
            app.logger.warning("Sheet parsed without any people")
            payload["warning"] = EMPTY_SHEET_WARNING
        return payload

    def sync_sheet(body):
        csv_url = resolve_sheet_url(body)
        contacts = read_contacts(body.get("contacts"))
        text = fetch_sheet_csv(csv_url, timeout=app.config["SHEET_FETCH_TIMEOUT"])
        result = parse_sheet_csv(text)
        payload = build_sync_payload(result, contacts, coerce_number(body.get("stored_rate")))
        app.logger.info(
            "Synced %d people from %s (meal rate %.2f)",
            len(payload["people"]),
            csv_url,
            payload["meal_rate"],
        )
        return payload

    def reminder_client():
        if not app.config.get("ENABLE_AI_REMINDERS"):
            return None
        return build_gemini_client(app.config.get("GEMINI_API_KEY"))

    @app.get("/health")
    def health():
        return jsonify(
            {
                "ok": True,
                "sheet_configured": bool(app.config.get("SHEET_CSV_URL")),
                "ai_reminders": bool(app.config.get("ENABLE_AI_REMINDERS") and app.config.get("GEMINI_API_KEY")),
            }
        )

    @app.post("/api/sheet/sync")
    def sheet_sync():
        return jsonify(sync_sheet(read_json_body()))

    @app.post("/api/sheet/parse")
    def sheet_parse():
        upload = request.files.get("file")
        if upload is not None and upload.filename:
            text = decode_csv_bytes(upload.read()) or ""
            contacts = None
            raw_contacts = request.form.get("contacts")
            if raw_contacts:
                try:
                    contacts = json.loads(raw_contacts)
                except ValueError:
                    abort(400, description="contacts must be valid JSON")
                contacts = read_contacts(contacts)
            stored_rate = coerce_number(request.form.get("stored_rate"))
        else:
            body = read_json_body()
            if "csv_text" not in body:
                abort(400, description="Upload a CSV file or send csv_text.")
            text = body.get("csv_text") or ""
            if not isinstance(text, str):
                abort(400, description="csv_text must be a string")
            contacts = read_contacts(body.get("contacts"))
            stored_rate = coerce_number(body.get("stored_rate"))

        return jsonify(build_sync_payload(parse_sheet_csv(text), contacts, stored_rate))

    @app.post("/api/reminders")
    def reminders():
        body = read_json_body()
        tone = body.get("tone") or app.config["REMINDER_TONE"]
        if not isinstance(tone, str):
            abort(400, description="tone must be a string")
        tone = tone.strip()
        threshold = coerce_number(body.get("threshold"))
        if threshold is None:
            threshold = app.config["REMINDER_THRESHOLD"]

        payload = sync_sheet(body)

        generated = generate_reminders(
            payload["balances"],
            tone=tone,
            meal_rate=payload["meal_rate"],
            threshold=threshold,
            client=reminder_client(),
            model=app.config["GEMINI_MODEL"],
        )
        emails = {person["id"]: person["email"] for person in payload["people"]}
        for reminder in generated:
            reminder["email"] = emails.get(reminder["person_id"], "")

        response = {
            "reminders": generated,
            "meal_rate": payload["meal_rate"],
            "threshold": threshold,
            "tone": tone,
        }
        if "warning" in payload:
            response["warning"] = payload["warning"]
        return jsonify(response)

    app.sync_sheet = sync_sheet
    return app
