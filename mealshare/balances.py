STATUS_OWED = "OWED"
STATUS_OWES = "OWES"
STATUS_SETTLED = "SETTLED"
# Balances within this many currency units of zero count as settled.
SETTLED_DEADBAND = 1


def as_number(value):
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def is_positive_rate(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def resolve_meal_rate(people, sheet_rate=None):
    if is_positive_rate(sheet_rate):
        return float(sheet_rate)
    total_contribution = sum(as_number(person.get("contribution")) for person in people)
    total_meals = sum(as_number(person.get("meals")) for person in people)
    if total_meals > 0:
        return total_contribution / total_meals
    return 0.0


def resolve_effective_rate(extracted_rate, stored_rate=None):
    """Pick the rate a sync should use: the sheet's own rate beats a stored one."""
    if is_positive_rate(extracted_rate):
        return float(extracted_rate)
    if is_positive_rate(stored_rate):
        return float(stored_rate)
    return None


def balance_status(balance):
    if balance > SETTLED_DEADBAND:
        return STATUS_OWED
    if balance < -SETTLED_DEADBAND:
        return STATUS_OWES
    return STATUS_SETTLED


def compute_balances(people, sheet_rate=None):
    """Work out cost, balance and status for every person.

    ``custom_balance`` (from a sheet's summary table) replaces the
    ``contribution - cost`` figure when present. Rows come back ordered from
    the most negative balance up.
    """
    total_contribution = sum(as_number(person.get("contribution")) for person in people)
    total_meals = sum(as_number(person.get("meals")) for person in people)
    meal_rate = resolve_meal_rate(people, sheet_rate)

    balances = []
    for person in people:
        meals = as_number(person.get("meals"))
        contribution = as_number(person.get("contribution"))
        cost = meals * meal_rate
        custom_balance = person.get("custom_balance")
        if custom_balance is not None:
            balance = as_number(custom_balance)
        else:
            balance = contribution - cost
        balances.append(
            {
                "person_id": person.get("id"),
                "name": person.get("name"),
                "meals": meals,
                "contribution": contribution,
                "cost": cost,
                "balance": balance,
                "status": balance_status(balance),
            }
        )
    balances.sort(key=lambda row: row["balance"])

    return {
        "balances": balances,
        "total_contribution": total_contribution,
        "total_meals": total_meals,
        "meal_rate": meal_rate,
    }


def normalize_contact_name(value):
    return (value or "").strip().lower()


def build_contact_lookup(contacts):
    if not contacts:
        return {}

    if isinstance(contacts, dict):
        pairs = contacts.items()
    else:
        pairs = (
            (member.get("sheet_name") or member.get("sheetName") or member.get("name"), member.get("email"))
            for member in contacts
            if isinstance(member, dict)
        )

    lookup = {}
    for name, email in pairs:
        key = normalize_contact_name(name)
        address = (email or "").strip().lower()
        if key and address:
            lookup.setdefault(key, address)
    return lookup


def merge_contact_emails(people, contacts):
    lookup = build_contact_lookup(contacts)
    merged = []
    for person in people:
        directory_email = lookup.get(normalize_contact_name(person.get("name")))
        merged.append(dict(person, email=directory_email or person.get("email", "")))
    return merged
