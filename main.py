import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import appointments
import auth
import chatbot
import database
import departments
import doctors
import patients
import payments
import reports
from config import settings

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Hospital Management API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ROUTERS = [
    auth.router,
    departments.router,
    departments.rooms_router,
    departments.specialties_router,
    doctors.router,
    patients.router,
    patients.records_router,
    appointments.router,
    payments.router,
    chatbot.router,
    reports.router,
]

for router in ROUTERS:
    app.include_router(router)

# --------------------------
# Base endpoints
# --------------------------

@app.get("/")
def read_root():
    return {"message": "Hospital Management API running"}


@app.get("/api/health")
def health():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
        "services": [{"name": r.tags[0], "prefix": r.prefix} for r in ROUTERS],
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = database.db.name
            response["collections"] = database.db.list_collection_names()[:20]
            response["connection_status"] = "Connected"
        else:
            response["database"] = "⚠️ DATABASE_URL not set"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
