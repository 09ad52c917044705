"""
PracticePanther entity configuration
One EntityConfig per provider entity type: where it is listed, which local
table it lands in, which column is the upsert conflict key, and how a raw
record becomes a local row.

Money fields arrive in cents and are stored as dollars.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from app.core.errors import DataShapeError
from app.services.sync.reconciliation import normalize_external_id


@dataclass(frozen=True)
class Reference:
    """Fill `column` with the local id of the row in `table` whose `key` equals row[`source_column`]."""
    column: str
    source_column: str
    table: str
    key: str


@dataclass(frozen=True)
class EntityConfig:
    name: str
    endpoint: str
    table: str
    unique_key: str
    transform: Callable[[Dict[str, Any]], Dict[str, Any]]
    id_field: str = "id"
    updated_field: str = "updated_at"
    version_column: Optional[str] = "pp_updated_at"
    display_field: str = "display_name"
    page_size: Optional[int] = None
    batch_size: Optional[int] = None
    references: Tuple[Reference, ...] = ()
    params: Dict[str, Any] = field(default_factory=dict)


# ============================================================================
# FIELD HELPERS
# ============================================================================

def _require_id(record: Dict[str, Any], entity: str) -> str:
    external_id = normalize_external_id(record.get("id"))
    if external_id is None:
        raise DataShapeError(f"{entity} record without id")
    return external_id


def _ref_id(record: Dict[str, Any], name: str) -> Optional[str]:
    ref = record.get(name)
    if isinstance(ref, dict):
        return normalize_external_id(ref.get("id"))
    return None


def _ref_name(record: Dict[str, Any], name: str) -> Optional[str]:
    ref = record.get(name)
    if isinstance(ref, dict):
        return ref.get("display_name")
    return None


def _cents(value: Any, field_name: str) -> float:
    if value is None or value == "":
        return 0.0
    try:
        return round(float(value) / 100, 2)
    except (TypeError, ValueError):
        raise DataShapeError(f"{field_name} is not numeric: {value!r}")


def _date_only(value: Any) -> Optional[str]:
    if not value:
        return None
    return str(value).split("T")[0]


def _parse_datetime(value: Any, field_name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise DataShapeError(f"{field_name} is not an ISO date: {value!r}")


def parse_decimal(value: Any) -> Optional[float]:
    """'$1,250,000.00' -> 1250000.0; unparseable -> None"""
    if value is None or value == "":
        return None
    try:
        return float(str(value).replace(",", "").replace("$", ""))
    except ValueError:
        return None


def _custom_field(record: Dict[str, Any], label: str) -> Any:
    for item in record.get("custom_field_values") or []:
        ref = item.get("custom_field_ref") or {}
        if (ref.get("label") or "").strip().lower() == label.lower():
            return item.get("value_string") or item.get("value_number") or item.get("value_date_time")
    return None


# ============================================================================
# STATUS MAPPING
# ============================================================================

MATTER_STATUS_MAP = {
    "open": "PENDING",
    "pending": "PENDING",
    "active": "45D",
    "in_progress": "180D",
    "completed": "COMPLETED",
    "closed": "COMPLETED",
    "terminated": "TERMINATED",
    "cancelled": "TERMINATED",
}

TASK_STATUS_MAP = {
    "pending": "PENDING",
    "notcompleted": "PENDING",
    "in_progress": "IN_PROGRESS",
    "inprogress": "IN_PROGRESS",
    "completed": "COMPLETED",
    "cancelled": "CANCELLED",
    "on_hold": "ON_HOLD",
}

TASK_PRIORITY_MAP = {
    "low": "LOW",
    "normal": "MEDIUM",
    "medium": "MEDIUM",
    "high": "HIGH",
    "urgent": "URGENT",
}

IDENTIFICATION_PERIOD = timedelta(days=45)
COMPLETION_PERIOD = timedelta(days=180)


def map_matter_status(status: Optional[str]) -> str:
    return MATTER_STATUS_MAP.get((status or "").strip().lower(), "PENDING")


def map_task_status(status: Optional[str]) -> str:
    return TASK_STATUS_MAP.get((status or "").strip().lower().replace(" ", ""), "PENDING")


def map_task_priority(priority: Optional[str]) -> str:
    return TASK_PRIORITY_MAP.get((priority or "").strip().lower(), "MEDIUM")


# ============================================================================
# TRANSFORMS
# ============================================================================

def transform_contact(contact: Dict[str, Any]) -> Dict[str, Any]:
    pp_id = _require_id(contact, "contact")
    display = (contact.get("display_name") or "").split(" ")
    return {
        "pp_id": pp_id,
        "first_name": contact.get("first_name") or (display[0] if display[0] else None),
        "last_name": contact.get("last_name") or (" ".join(display[1:]) or None),
        "email": contact.get("email"),
        "phone_mobile": contact.get("phone_mobile"),
        "phone_home": contact.get("phone_home"),
        "phone_work": contact.get("phone_work"),
        "phone_fax": contact.get("phone_fax"),
        "account_ref_id": _ref_id(contact, "account_ref"),
        "account_ref_name": _ref_name(contact, "account_ref"),
        "is_primary_contact": bool(contact.get("is_primary_contact")),
        "custom_field_values": contact.get("custom_field_values"),
        "pp_created_at": contact.get("created_at"),
        "pp_updated_at": contact.get("updated_at"),
        "pp_raw_data": contact,
    }


def transform_matter(matter: Dict[str, Any]) -> Dict[str, Any]:
    """Matter -> Exchange, with 45/180-day deadlines counted from the opening date."""
    pp_matter_id = _require_id(matter, "matter")
    opened = _parse_datetime(matter.get("open_date") or matter.get("opened_date"), "open_date")
    closed = matter.get("close_date") or matter.get("closed_date")
    return {
        "pp_matter_id": pp_matter_id,
        "pp_matter_number": matter.get("number") or matter.get("matter_number"),
        "name": matter.get("display_name") or matter.get("name") or f"Matter {pp_matter_id}",
        "status": map_matter_status(matter.get("status")),
        "pp_matter_status": matter.get("status"),
        "pp_practice_area": matter.get("practice_area"),
        "pp_responsible_attorney": matter.get("responsible_attorney"),
        "pp_opened_date": opened.date().isoformat() if opened else None,
        "pp_closed_date": _date_only(closed),
        "pp_account_ref_id": _ref_id(matter, "account_ref"),
        "exchange_value": parse_decimal(_custom_field(matter, "exchange value")),
        "notes": matter.get("notes") or matter.get("description") or "",
        "identification_deadline": (opened + IDENTIFICATION_PERIOD).date().isoformat() if opened else None,
        "completion_deadline": (opened + COMPLETION_PERIOD).date().isoformat() if opened else None,
        "pp_updated_at": matter.get("updated_at"),
        "pp_data": matter,
    }


def transform_task(task: Dict[str, Any]) -> Dict[str, Any]:
    pp_id = _require_id(task, "task")
    return {
        "pp_id": pp_id,
        "title": task.get("subject") or task.get("title") or f"Task {pp_id}",
        "description": task.get("notes") or task.get("description") or "",
        "status": map_task_status(task.get("status")),
        "priority": map_task_priority(task.get("priority")),
        "due_date": _date_only(task.get("due_date")),
        "matter_ref_id": _ref_id(task, "matter_ref"),
        "matter_ref_name": _ref_name(task, "matter_ref"),
        "assigned_to_users": task.get("assigned_to_users"),
        "assigned_to_contacts": task.get("assigned_to_contacts"),
        "tags": task.get("tags"),
        "pp_created_at": task.get("created_at"),
        "pp_updated_at": task.get("updated_at"),
    }


def transform_invoice(invoice: Dict[str, Any]) -> Dict[str, Any]:
    pp_id = _require_id(invoice, "invoice")
    total_paid = _cents(invoice.get("total_paid"), "total_paid")
    total_outstanding = _cents(invoice.get("total_outstanding"), "total_outstanding")
    if total_outstanding == 0:
        status = "paid"
    elif total_paid > 0:
        status = "partial"
    else:
        status = "unpaid"

    return {
        "pp_id": pp_id,
        "invoice_number": invoice.get("number") or pp_id,
        "issue_date": _date_only(invoice.get("issue_date")),
        "due_date": _date_only(invoice.get("due_date")),
        "status": status,
        "invoice_type": invoice.get("invoice_type"),
        "subtotal": _cents(invoice.get("subtotal"), "subtotal"),
        "tax": _cents(invoice.get("tax"), "tax"),
        "discount": _cents(invoice.get("discount"), "discount"),
        "total": _cents(invoice.get("total"), "total"),
        "total_paid": total_paid,
        "total_outstanding": total_outstanding,
        "items_time_entries": invoice.get("items_time_entries"),
        "items_expenses": invoice.get("items_expenses"),
        "items_flat_fees": invoice.get("items_flat_fees"),
        "pp_account_ref_id": _ref_id(invoice, "account_ref"),
        "pp_matter_ref_id": _ref_id(invoice, "matter_ref"),
        "pp_created_at": invoice.get("created_at"),
        "pp_updated_at": invoice.get("updated_at"),
    }


def transform_expense(expense: Dict[str, Any]) -> Dict[str, Any]:
    pp_id = _require_id(expense, "expense")
    return {
        "pp_id": pp_id,
        "description": expense.get("description"),
        "expense_date": _date_only(expense.get("date")),
        "quantity": expense.get("qty") or 1,
        "price": _cents(expense.get("price"), "price"),
        "amount": _cents(expense.get("amount"), "amount"),
        "is_billable": bool(expense.get("is_billable")),
        "is_billed": bool(expense.get("is_billed")),
        "private_notes": expense.get("private_notes"),
        "pp_matter_ref_id": _ref_id(expense, "matter_ref"),
        "pp_account_ref_id": _ref_id(expense, "account_ref"),
        "pp_expense_category_ref": expense.get("expense_category_ref"),
        "pp_billed_by_user_ref": expense.get("billed_by_user_ref"),
        "pp_created_at": expense.get("created_at"),
        "pp_updated_at": expense.get("updated_at"),
    }


def transform_user(user: Dict[str, Any]) -> Dict[str, Any]:
    pp_user_id = _require_id(user, "user")
    if not user.get("email"):
        raise DataShapeError(f"user {pp_user_id} has no email")
    return {
        "pp_user_id": pp_user_id,
        "email": user["email"].strip().lower(),
        "first_name": user.get("first_name"),
        "last_name": user.get("last_name"),
        "pp_display_name": user.get("display_name"),
        "pp_is_active": user.get("is_active", True),
        "pp_updated_at": user.get("updated_at"),
    }


# ============================================================================
# REGISTRY
# ============================================================================

EXCHANGE_REF = Reference(column="exchange_id", source_column="pp_matter_ref_id", table="exchanges", key="pp_matter_id")

ENTITY_CONFIGS: Dict[str, EntityConfig] = {
    "matters": EntityConfig(
        name="matters",
        endpoint="matters",
        table="exchanges",
        unique_key="pp_matter_id",
        transform=transform_matter,
        batch_size=25,
        references=(
            Reference(column="client_id", source_column="pp_account_ref_id", table="contacts", key="account_ref_id"),
        ),
    ),
    "contacts": EntityConfig(
        name="contacts",
        endpoint="contacts",
        table="contacts",
        unique_key="pp_id",
        transform=transform_contact,
        batch_size=50,
    ),
    "users": EntityConfig(
        name="users",
        endpoint="users",
        table="users",
        unique_key="pp_user_id",
        transform=transform_user,
    ),
    "tasks": EntityConfig(
        name="tasks",
        endpoint="tasks",
        table="tasks",
        unique_key="pp_id",
        transform=transform_task,
        display_field="subject",
        batch_size=100,
        references=(
            Reference(column="exchange_id", source_column="matter_ref_id", table="exchanges", key="pp_matter_id"),
        ),
    ),
    "invoices": EntityConfig(
        name="invoices",
        endpoint="invoices",
        table="invoices",
        unique_key="pp_id",
        transform=transform_invoice,
        display_field="number",
        references=(
            EXCHANGE_REF,
            Reference(column="contact_id", source_column="pp_account_ref_id", table="contacts", key="account_ref_id"),
        ),
    ),
    "expenses": EntityConfig(
        name="expenses",
        endpoint="expenses",
        table="expenses",
        unique_key="pp_id",
        transform=transform_expense,
        display_field="description",
        references=(EXCHANGE_REF,),
    ),
}

# Referenced tables first: matters point at contacts, tasks/invoices/expenses at matters
SYNC_ORDER = ("contacts", "matters", "users", "tasks", "invoices", "expenses")


def get_entity_config(entity_type: str) -> EntityConfig:
    try:
        return ENTITY_CONFIGS[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type '{entity_type}'. Must be one of: {', '.join(SYNC_ORDER)}")
