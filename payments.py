"""
Payments

Records cash and gateway (PayOS) payments against appointments. Checkout
links are created by the gateway itself; this service only keeps the payment
rows and reconciles them from webhook notifications or manual sync snapshots.
"""

import hashlib
import hmac
import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pymongo.database import Database

from config import settings
from database import create_document, get_db, get_documents, get_optional_db, now_utc, paginate, serialize, update_document
from identifiers import generate_order_code
from schemas import GatewaySnapshot, PaymentCreate, PaymentMethod
from security import get_current_user, require_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])

STATUSES = ["pending", "processing", "completed", "failed", "cancelled", "refunded"]

GATEWAY_STATUS_MAP = {
    "PAID": "completed",
    "CANCELLED": "failed",
    "PROCESSING": "processing",
}

DESCRIPTION_PATTERNS = {
    "patient_id": re.compile(r"patient_id:\s*([A-Za-z0-9-]+)"),
    "record_id": re.compile(r"record_id:\s*([A-Za-z0-9-]+)"),
    "appointment_id": re.compile(r"appointment #([A-Za-z0-9-]+)", re.IGNORECASE),
}


# --------------------------
# Gateway helpers
# --------------------------

def map_gateway_status(status: Any, code: Any = None) -> str:
    """Translate a gateway status (or bare result code) into our payment status."""
    if not status:
        status = "PAID" if str(code) == "00" else "PENDING"
    return GATEWAY_STATUS_MAP.get(str(status).upper(), "pending")


def sign_payload(raw_body: bytes, key: str) -> str:
    return hmac.new(key.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], key: str) -> bool:
    if not signature or not key:
        return False
    return hmac.compare_digest(sign_payload(raw_body, key), signature)


def _transactions(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    transactions = data.get("transactions")
    if not isinstance(transactions, list):
        return []
    return [t for t in transactions if isinstance(t, dict)]


def _transaction_reference(data: Dict[str, Any]) -> Optional[str]:
    transactions = _transactions(data)
    if transactions:
        return transactions[0].get("reference")
    return data.get("reference")


def _transaction_time(data: Dict[str, Any]) -> datetime:
    """When the gateway says the money moved, falling back to now."""
    transactions = _transactions(data)
    raw = transactions[0].get("transactionDateTime") if transactions else data.get("transactionDateTime")
    if isinstance(raw, str):
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            logger.warning("Unparseable transactionDateTime %r", raw)
    return now_utc()


def parse_payment_description(description: str) -> Dict[str, Any]:
    """Pull patient/record/appointment references out of a free-text description.

    Checkout descriptions look like ``"Payment for appointment #APT-20300115-0001,
    patient_id: PAT-202501-001"``. Used to trace payments the gateway knows
    about but we never stored.
    """
    refs: Dict[str, Any] = {"patient_id": None, "record_id": None, "appointment_id": None}
    for field, pattern in DESCRIPTION_PATTERNS.items():
        match = pattern.search(description)
        if match:
            refs[field] = match.group(1)

    lowered = description.lower()
    if "appointment" in lowered:
        refs["payment_type"] = "appointment"
    elif "record" in lowered:
        refs["payment_type"] = "medical_record"
    else:
        refs["payment_type"] = "other"
    return refs


def _recovered_payment(database: Database, order_code: int, data: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    description = data.get("description")
    description = description if isinstance(description, str) else ""
    refs = parse_payment_description(description)

    if refs["appointment_id"]:
        appointment = database["appointments"].find_one({"appointment_id": refs["appointment_id"]})
        if appointment:
            refs["patient_id"] = refs["patient_id"] or appointment["patient_id"]
            refs["doctor_id"] = appointment["doctor_id"]
        else:
            logger.warning("Recovered payment %s names unknown appointment %s", order_code, refs["appointment_id"])

    return {
        "order_code": order_code,
        "amount": data.get("amount") or 0,
        "description": description,
        "method": "payos",
        "recovered": True,
        **refs,
        **changes,
    }


def apply_gateway_update(database: Database, order_code: int, data: Dict[str, Any]) -> Dict[str, Any]:
    """Bring the stored payment in line with a gateway notification.

    Returns ``{"action": created|updated|unchanged, "payment": ...}``. Unknown
    order codes are recovered as new rows so that money received is never lost.
    """
    status = map_gateway_status(data.get("status"), data.get("code"))
    existing = database["payments"].find_one({"order_code": order_code})

    if existing and existing["status"] == "completed":
        return {"action": "unchanged", "payment": serialize(existing)}

    gateway_status = data.get("status") or data.get("code")
    changes: Dict[str, Any] = {"status": status, "gateway_status": str(gateway_status) if gateway_status else None}
    if status == "completed":
        changes["paid_at"] = _transaction_time(data)
        changes["transaction_id"] = _transaction_reference(data)
    if _transactions(data):
        changes["transactions"] = _transactions(data)

    if existing is None:
        created = create_document(database, "payments", _recovered_payment(database, order_code, data, changes))
        logger.warning("Recovered unknown payment %s from gateway as %s", order_code, status)
        return {"action": "created", "payment": serialize(created)}

    updated = update_document(database, "payments", {"order_code": order_code}, changes)
    logger.info("Payment %s: %s -> %s", order_code, existing["status"], status)
    return {"action": "updated", "payment": serialize(updated)}


def get_payment_or_404(database: Database, order_code: int) -> Dict[str, Any]:
    payment = database["payments"].find_one({"order_code": order_code})
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    return payment


def ensure_owner(user: Dict[str, Any], payment: Dict[str, Any]) -> None:
    if user["role"] == "patient" and payment.get("patient_id") != user.get("patient_id"):
        raise HTTPException(status_code=403, detail="Not your payment")


# --------------------------
# Endpoints
# --------------------------

@router.post("/webhook")
async def payment_webhook(request: Request, database: Optional[Database] = Depends(get_optional_db)):
    # Always 200: the gateway retries on anything else
    try:
        return await _handle_webhook(request, database)
    except Exception:
        logger.exception("Unhandled webhook error")
        return {"success": False, "error": "Unhandled webhook error"}


async def _handle_webhook(request: Request, database: Optional[Database]) -> Dict[str, Any]:
    raw_body = await request.body()
    signature = request.headers.get("x-payos-signature")
    key = settings.payment.checksum_key

    if key:
        if not verify_webhook_signature(raw_body, signature, key):
            logger.warning("Rejected webhook with invalid signature")
            return {"success": False, "error": "Invalid signature"}
    else:
        logger.warning("PAYOS_CHECKSUM_KEY not set, skipping webhook signature check")

    try:
        body = json.loads(raw_body or b"{}")
    except ValueError:
        logger.warning("Webhook body is not valid JSON")
        return {"success": False, "error": "Invalid JSON body"}

    data = body.get("data") if isinstance(body, dict) else None
    order_code = (data.get("orderCode") or data.get("order_code")) if isinstance(data, dict) else None
    if not order_code:
        logger.warning("Webhook without orderCode: %s", body)
        return {"success": False, "error": "Invalid webhook data structure"}

    if database is None:
        logger.error("Webhook for %s received but no database is configured", order_code)
        return {"success": False, "error": "Database connection error"}

    try:
        result = apply_gateway_update(database, int(order_code), data)
    except (TypeError, ValueError) as e:
        logger.warning("Could not process webhook for %s: %s", order_code, e)
        return {"success": False, "error": "Error processing payment", "details": str(e)}
    return {"success": True, "message": "Payment processed", "action": result["action"]}


@router.post("", status_code=201)
def create_payment(payload: PaymentCreate, user=Depends(get_current_user), database: Database = Depends(get_db)):
    if not settings.payment.min_amount <= payload.amount <= settings.payment.max_amount:
        raise HTTPException(status_code=400, detail="Invalid payment amount")

    appointment = database["appointments"].find_one({"appointment_id": payload.appointment_id})
    if not appointment:
        raise HTTPException(status_code=404, detail="Appointment not found")
    if user["role"] == "patient" and appointment["patient_id"] != user.get("patient_id"):
        raise HTTPException(status_code=403, detail="Patients can only pay for their own appointments")
    if appointment["status"] == "cancelled":
        raise HTTPException(status_code=400, detail="Appointment is cancelled")

    doc: Dict[str, Any] = {
        "order_code": generate_order_code(),
        "appointment_id": payload.appointment_id,
        "patient_id": appointment["patient_id"],
        "doctor_id": appointment["doctor_id"],
        "amount": payload.amount,
        "description": payload.description or f"Appointment {payload.appointment_id}",
        "method": payload.method,
        "created_by": user["id"],
    }
    if payload.method == "cash":
        doc.update({"status": "completed", "paid_at": now_utc()})
    else:
        doc["status"] = "pending"

    payment = create_document(database, "payments", doc)
    logger.info("Created %s payment %s for %s", payload.method, payment["order_code"], payload.appointment_id)
    return serialize(payment)


@router.get("")
def list_payments(
    status: Optional[str] = None,
    method: Optional[PaymentMethod] = None,
    patient_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(require_roles(["admin"])),
    database: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if status:
        if status not in STATUSES:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
        query["status"] = status
    if method:
        query["method"] = method
    if patient_id:
        query["patient_id"] = patient_id
    return paginate(database, "payments", query, page, limit, sort=[("created_at", -1)])


@router.get("/history")
def payment_history(user=Depends(get_current_user), database: Database = Depends(get_db)):
    if not user.get("patient_id"):
        raise HTTPException(status_code=403, detail="Only patients have a payment history")
    return get_documents(database, "payments", {"patient_id": user["patient_id"]}, sort=[("created_at", -1)])


@router.get("/stats")
def payment_stats(user=Depends(require_roles(["admin"])), database: Database = Depends(get_db)):
    by_status = {s: 0 for s in STATUSES}
    by_method: Dict[str, int] = {}
    revenue = 0
    for payment in database["payments"].find({}, {"status": 1, "method": 1, "amount": 1}):
        if payment.get("status") in by_status:
            by_status[payment["status"]] += 1
        method = payment.get("method", "unknown")
        by_method[method] = by_method.get(method, 0) + 1
        if payment.get("status") == "completed":
            revenue += payment.get("amount") or 0
    return {"total_revenue": revenue, "by_status": by_status, "by_method": by_method}


@router.get("/{order_code}")
def get_payment(order_code: int, user=Depends(get_current_user), database: Database = Depends(get_db)):
    payment = get_payment_or_404(database, order_code)
    ensure_owner(user, payment)
    return serialize(payment)


@router.post("/{order_code}/cancel")
def cancel_payment(order_code: int, user=Depends(get_current_user), database: Database = Depends(get_db)):
    payment = get_payment_or_404(database, order_code)
    ensure_owner(user, payment)
    if payment["status"] != "pending":
        raise HTTPException(status_code=400, detail="Payment cannot be cancelled")
    updated = update_document(database, "payments", {"order_code": order_code}, {"status": "cancelled", "cancelled_by": user["id"]})
    logger.info("Cancelled payment %s", order_code)
    return serialize(updated)


@router.post("/{order_code}/sync")
def sync_payment(
    order_code: int,
    snapshot: GatewaySnapshot,
    user=Depends(require_roles(["admin"])),
    database: Database = Depends(get_db),
):
    get_payment_or_404(database, order_code)
    result = apply_gateway_update(database, order_code, snapshot.model_dump(mode="json"))
    return {"success": True, **result}
