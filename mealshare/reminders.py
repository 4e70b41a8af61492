import json
import logging
from datetime import datetime, timezone

from google import genai

logger = logging.getLogger(__name__)

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_TONE = "friendly"
DEFAULT_THRESHOLD = 50

REMINDER_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "person_id": {"type": "string"},
            "message": {
                "type": "string",
                "description": "A context-aware message urging the person to add money.",
            },
        },
        "required": ["person_id", "message"],
    },
}


def build_gemini_client(api_key):
    if not api_key:
        return None
    return genai.Client(api_key=api_key)


def select_reminder_targets(balances, threshold):
    return [row for row in balances if row["balance"] < threshold]


def amount_owed(balance):
    return abs(balance) if balance < 0 else 0.0


def reminder_context(row, meal_rate):
    balance = row["balance"]
    if balance < 0:
        status, meals_remaining = "DEBT", 0
    else:
        status = "LOW_FUNDS"
        meals_remaining = f"{balance / meal_rate:.1f}" if meal_rate > 0 else "Unknown"
    return {
        "person_id": row["person_id"],
        "name": row["name"],
        "balance": f"{balance:.2f}",
        "status": status,
        "meals_remaining": meals_remaining,
    }


def build_reminder_prompt(targets, tone, meal_rate):
    contexts = [reminder_context(row, meal_rate) for row in targets]
    return (
        "You are an automated finance manager for a shared meal plan.\n"
        f"Current meal rate: {meal_rate:.2f} per meal.\n\n"
        "Task: write a short notification message for each member below who has a low or negative balance.\n\n"
        f"Members:\n{json.dumps(contexts)}\n\n"
        "Guidelines:\n"
        "1. Status DEBT: be firm and state the amount owed (the absolute balance).\n"
        "2. Status LOW_FUNDS: be helpful and mention roughly how many meals the balance still covers.\n"
        f"3. Tone: {tone}.\n"
        "4. Keep each message under 20 words if possible.\n\n"
        'Output JSON: [{"person_id": "...", "message": "..."}]'
    )


def generated_timestamp():
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def build_reminder(row, message):
    return {
        "person_id": row["person_id"],
        "name": row["name"],
        "amount_owed": amount_owed(row["balance"]),
        "message": message,
        "generated_at": generated_timestamp(),
    }


def fallback_reminders(targets):
    reminders = []
    for row in targets:
        balance = row["balance"]
        if balance < 0:
            message = f"Alert: Balance is {balance:.2f}. Please add money."
        else:
            message = f"Warning: Balance low ({balance:.2f}). Recharge soon."
        reminders.append(build_reminder(row, message))
    return reminders


def request_reminder_messages(client, model, prompt):
    response = client.models.generate_content(
        model=model,
        contents=prompt,
        config={
            "response_mime_type": "application/json",
            "response_json_schema": REMINDER_SCHEMA,
        },
    )
    text = (response.text or "").strip()
    if not text:
        raise ValueError("Empty response from model")
    items = json.loads(text)
    if not isinstance(items, list):
        raise ValueError("Model response is not a list")
    return items


def generate_reminders(
    balances,
    tone=DEFAULT_TONE,
    meal_rate=0.0,
    threshold=DEFAULT_THRESHOLD,
    client=None,
    model=DEFAULT_GEMINI_MODEL,
):
    """Write a payment reminder for everyone whose balance is under ``threshold``.

    Messages come from Gemini when ``client`` is given. Without a client, or
    when the model call or its JSON fails, every target gets a plain
    templated message instead.
    """
    targets = select_reminder_targets(balances, threshold)
    if not targets:
        return []

    if client is None:
        logger.info("No Gemini client configured; using templated reminders for %d people", len(targets))
        return fallback_reminders(targets)

    prompt = build_reminder_prompt(targets, tone, meal_rate)
    try:
        items = request_reminder_messages(client, model, prompt)
    except Exception as exc:
        logger.warning("Reminder generation failed, using templated reminders: %s", exc)
        return fallback_reminders(targets)

    targets_by_id = {str(row["person_id"]): row for row in targets}
    reminders = []
    for item in items:
        if not isinstance(item, dict):
            continue
        row = targets_by_id.get(str(item.get("person_id")))
        message = (item.get("message") or "").strip()
        if row is None or not message:
            continue
        reminders.append(build_reminder(row, message))
    return reminders
