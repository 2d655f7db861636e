from fastapi import APIRouter, Depends
from pymongo.database import Database

from database import get_db, now_utc
from security import require_roles

router = APIRouter(prefix="/api/reports", tags=["reports"])


@router.get("/summary")
def reports_summary(user=Depends(require_roles(["admin"])), database: Database = Depends(get_db)):
    now = now_utc()
    revenue = sum(
        payment.get("amount") or 0
        for payment in database["payments"].find({"status": "completed"}, {"amount": 1})
    )
    return {
        "patients": database["patients"].count_documents({}),
        "doctors": database["doctors"].count_documents({}),
        "appointments": database["appointments"].count_documents({}),
        "appointments_today": database["appointments"].count_documents({"appointment_date": now.date().isoformat()}),
        "departments": database["departments"].count_documents({"is_active": True}),
        "rooms": database["rooms"].count_documents({"is_active": True}),
        "revenue": revenue,
        "generated_at": now.isoformat(),
    }
