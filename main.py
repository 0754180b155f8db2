import logging
import os
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database

import invoices
import services
from database import DATABASE_NAME, DATABASE_URL, db, ensure_indexes, get_db
from errors import AppError, ValidationError
from schemas import (
    InvoiceCreated,
    InvoiceIn,
    PermissionPatch,
    ReferrerIn,
    ReferrerUpdate,
    StaffIn,
    StaffUpdate,
    TestIn,
    TestUpdate,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes(db)
    yield


# App setup
app = FastAPI(title="LabPilot Back-Office API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
    allow_headers=["*"],
)


# Error handling
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        message = first.get("msg", message).removeprefix("Value error, ")
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        if field and message == "Field required":
            message = f"{field} is required"
    err = ValidationError(message, detail=[{"loc": e.get("loc"), "msg": e.get("msg")} for e in errors])
    return JSONResponse(status_code=err.http_status, content=err.to_dict())


@app.middleware("http")
async def catch_unhandled(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )


# Health endpoints
@app.get("/")
def read_root():
    return {"message": "LabPilot Back-Office API running"}


@app.get("/health")
def health(database: Database = Depends(get_db)):
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_url": "Set" if os.getenv("DATABASE_URL") or os.getenv("MONGODB_URI") else "Default",
        "database_name": DATABASE_NAME,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        cols = database.list_collection_names()
    except Exception as e:
        logger.warning("Health check could not reach %s: %s", DATABASE_URL, e)
        response["database"] = f"Error: {str(e)[:80]}"
    else:
        response.update({
            "database": "Connected & Working",
            "connection_status": "Connected",
            "collections": cols[:10],
        })
    return response


router = APIRouter(prefix="/api/v1")


# Invoices
@router.get("/invoice/required-data")
def invoice_required_data(database: Database = Depends(get_db)):
    return invoices.get_required_data(database)


@router.post("/invoice/add", response_model=InvoiceCreated, status_code=status.HTTP_201_CREATED)
def add_invoice(body: InvoiceIn, database: Database = Depends(get_db)):
    return invoices.create_invoice(database, body)


@router.get("/invoice/all")
def list_invoices(database: Database = Depends(get_db)):
    return invoices.list_invoices(database)


@router.get("/invoice/{invoice_id}")
def get_invoice(invoice_id: str, database: Database = Depends(get_db)):
    return invoices.get_invoice(database, invoice_id)


# Test catalog
# Fixed paths are registered before /test/{test_id} so they are not taken as IDs
@router.get("/test/all")
def list_tests(database: Database = Depends(get_db)):
    return services.list_tests(database)


@router.get("/test/categories")
def list_test_categories(database: Database = Depends(get_db)):
    return services.list_test_categories(database)


@router.get("/test/catalog")
def list_test_catalog(database: Database = Depends(get_db)):
    return services.list_test_catalog(database)


@router.get("/test/schema/{test_id}")
def list_test_schemas(test_id: str, database: Database = Depends(get_db)):
    return services.list_active_schemas(database, test_id)


@router.get("/test/{test_id}")
def get_test(test_id: str, database: Database = Depends(get_db)):
    return services.get_test(database, test_id)


@router.post("/test", status_code=status.HTTP_201_CREATED)
def create_test(body: TestIn, database: Database = Depends(get_db)):
    return services.create_test(database, body)


@router.patch("/test/{test_id}")
def update_test(test_id: str, body: TestUpdate, database: Database = Depends(get_db)):
    return services.update_test(database, test_id, body)


@router.delete("/test/{test_id}")
def delete_test(test_id: str, database: Database = Depends(get_db)):
    return services.delete_test(database, test_id)


# Referrers
@router.get("/referrers")
def list_referrers(database: Database = Depends(get_db)):
    return services.list_referrers(database)


@router.get("/referrer/{referrer_id}")
def get_referrer(referrer_id: str, database: Database = Depends(get_db)):
    return services.get_referrer(database, referrer_id)


@router.post("/referrer/add", status_code=status.HTTP_201_CREATED)
def create_referrer(body: ReferrerIn, database: Database = Depends(get_db)):
    return services.create_referrer(database, body)


@router.put("/referrer/edit/{referrer_id}")
def update_referrer(referrer_id: str, body: ReferrerUpdate, database: Database = Depends(get_db)):
    return services.update_referrer(database, referrer_id, body)


@router.patch("/referrer/{referrer_id}/activate")
def activate_referrer(referrer_id: str, database: Database = Depends(get_db)):
    return services.set_referrer_active(database, referrer_id, True)


@router.patch("/referrer/{referrer_id}/deactivate")
def deactivate_referrer(referrer_id: str, database: Database = Depends(get_db)):
    return services.set_referrer_active(database, referrer_id, False)


@router.delete("/referrer/{referrer_id}")
def delete_referrer(referrer_id: str, database: Database = Depends(get_db)):
    return services.delete_referrer(database, referrer_id)


# Staff
@router.get("/staffs")
def list_staff(database: Database = Depends(get_db)):
    return services.list_staff(database)


@router.get("/staff/active/list")
def list_active_staff(database: Database = Depends(get_db)):
    return services.list_active_staff(database)


@router.get("/staff/username/{username}")
def get_staff_by_username(username: str, database: Database = Depends(get_db)):
    return services.get_staff_by_username(database, username)


@router.get("/staff/permission/{permission}")
def list_staff_with_permission(permission: str, database: Database = Depends(get_db)):
    return services.list_staff_with_permission(database, permission)


@router.get("/staff/{staff_id}")
def get_staff(staff_id: str, database: Database = Depends(get_db)):
    return services.get_staff(database, staff_id)


@router.post("/staff/add", status_code=status.HTTP_201_CREATED)
def create_staff(body: StaffIn, database: Database = Depends(get_db)):
    return services.create_staff(database, body)


@router.put("/staff/edit/{staff_id}")
def update_staff(staff_id: str, body: StaffUpdate, database: Database = Depends(get_db)):
    return services.update_staff(database, staff_id, body)


@router.patch("/staff/{staff_id}/activate")
def activate_staff(staff_id: str, database: Database = Depends(get_db)):
    return services.set_staff_active(database, staff_id, True)


@router.patch("/staff/{staff_id}/deactivate")
def deactivate_staff(staff_id: str, database: Database = Depends(get_db)):
    return services.set_staff_active(database, staff_id, False)


@router.patch("/staff/{staff_id}/permissions")
def update_staff_permission(staff_id: str, body: PermissionPatch, database: Database = Depends(get_db)):
    return services.set_staff_permission(database, staff_id, body)


@router.delete("/staff/{staff_id}")
def delete_staff(staff_id: str, database: Database = Depends(get_db)):
    return services.delete_staff(database, staff_id)


app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
