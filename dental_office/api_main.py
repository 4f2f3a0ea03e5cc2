from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .audit import Actor
from .auth_security import actor_from_token
from .cases import CaseFilters, attachment_flat, case_flat
from .config import setup_logging
from .db import Database, get_database
from .errors import DomainError, StoreError, Unauthorized
from .labs import lab_flat, price_flat
from .messages import message_flat
from .services import (
    Components,
    build_components,
    case_detail,
    create_patient,
    create_professional,
    init_db,
    list_patients_flat,
    list_professionals_flat,
)
from .validators import parse_status

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

app = FastAPI(title="Dental Office API", version="1.0.0")



# Startup

@app.on_event("startup")
def startup() -> None:
    setup_logging()
    # honour test overrides of the database dependency
    provider = app.dependency_overrides.get(get_database, get_database)
    init_db(provider())



# Error shape: {success: false, error, kind}

def _error(status_code: int, message: str, kind: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message, "kind": kind})


@app.exception_handler(DomainError)
def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    return _error(exc.status_code, exc.message, exc.kind)


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    message = f"{where}: {first.get('msg')}" if where else str(first.get("msg", "Invalid request"))
    return _error(status.HTTP_400_BAD_REQUEST, message, "validation_error")


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    kind = "not_found" if exc.status_code == 404 else "http_error"
    return _error(exc.status_code, str(exc.detail), kind)


@app.exception_handler(SQLAlchemyError)
def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Store failure on %s %s", request.method, request.url.path)
    err = StoreError()
    return _error(err.status_code, err.message, err.kind)


@app.exception_handler(Exception)
def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unexpected failure on %s %s", request.method, request.url.path)
    err = StoreError()
    return _error(err.status_code, err.message, err.kind)



# Dependencies

def get_components(db: Database = Depends(get_database)) -> Components:
    return build_components(db)


def get_actor(credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme)) -> Actor:
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Missing bearer token")
    return actor_from_token(credentials.credentials)



# Request schemas (camelCase on the wire)

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    def fields_set(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class CaseCreateIn(CamelModel):
    patient_id: int | None = None
    work_type: str | None = None
    lab_id: int | None = None
    professional_id: int | None = None
    work_type_detail: str | None = None
    piece_kind: str | None = None
    teeth: list[str] | None = None
    material: str | None = None
    material_detail: str | None = None
    technique: str | None = None
    shade: str | None = None
    shade_scale: str | None = None
    urgency: str | None = None
    date_sent: date | None = None
    date_promised: date | None = None
    clinical_notes: str | None = None
    technical_notes: str | None = None
    files_url: str | None = None
    agreed_value: Decimal | None = None
    cost_value: Decimal | None = None
    group_id: str | None = None


class CaseUpdateIn(CamelModel):
    lab_id: int | None = None
    professional_id: int | None = None
    work_type: str | None = None
    work_type_detail: str | None = None
    piece_kind: str | None = None
    teeth: list[str] | None = None
    material: str | None = None
    material_detail: str | None = None
    technique: str | None = None
    shade: str | None = None
    shade_scale: str | None = None
    urgency: str | None = None
    date_sent: date | None = None
    date_promised: date | None = None
    date_actual_return: date | None = None
    clinical_notes: str | None = None
    technical_notes: str | None = None
    files_url: str | None = None
    agreed_value: Decimal | None = None


class StatusIn(CamelModel):
    status: str | None = None
    note: str | None = None
    cost_value: Decimal | None = None


class CostIn(CamelModel):
    cost_value: Decimal | None = None


class MessageIn(CamelModel):
    body: str | None = None


class AttachmentIn(CamelModel):
    kind: str
    file_name: str
    url: str
    original_name: str | None = None
    size_bytes: int | None = None
    mime_type: str | None = None
    description: str | None = None


class LabIn(CamelModel):
    name: str | None = None
    tax_id: str | None = None
    phone: str | None = None
    whatsapp: str | None = None
    email: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    technical_lead: str | None = None
    technical_lead_license: str | None = None
    specialties: list[str] | None = None
    notes: str | None = None


class PriceIn(CamelModel):
    material: str | None = None
    procedure: str | None = None
    value: Decimal | None = None
    note: str | None = None


class PricesBulkIn(CamelModel):
    prices: list[PriceIn]


class PatientIn(CamelModel):
    name: str | None = None
    phone: str | None = None
    mobile: str | None = None
    email: str | None = None


class ProfessionalIn(CamelModel):
    name: str | None = None
    icon: str | None = None



# Health

@app.get("/health")
def health() -> dict[str, Any]:
    return {"success": True, "status": "ok"}



# Prosthetic cases

@app.post("/cases", status_code=status.HTTP_201_CREATED)
def create_case(
    payload: CaseCreateIn,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    c = comp.cases.create(actor, payload.fields_set())
    return {"success": True, "id": c.id, "code": c.code, "groupId": c.group_id}


@app.get("/cases")
def list_cases(
    status_: str | None = Query(None, alias="status"),
    lab_id: int | None = Query(None, alias="labId"),
    patient_id: int | None = Query(None, alias="patientId"),
    professional_id: int | None = Query(None, alias="professionalId"),
    urgency: str | None = Query(None),
    limit: int | None = Query(None),
    offset: int | None = Query(None),
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    filters = CaseFilters.build(
        status=status_, lab_id=lab_id, patient_id=patient_id, professional_id=professional_id, urgency=urgency
    )
    page = comp.cases.list(actor.clinic_id, filters, limit=limit, offset=offset)
    return {
        "success": True,
        "cases": page.cases,
        "stats": page.stats.to_dict(),
        "pagination": page.pagination(),
    }


@app.get("/cases/{case_id}")
def get_case(
    case_id: int,
    history_order: str = Query("asc", alias="historyOrder", pattern="^(asc|desc)$"),
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    detail = case_detail(comp, actor.clinic_id, case_id, newest_first=history_order == "desc")
    return {"success": True, "case": detail}


@app.put("/cases/{case_id}")
def update_case(
    case_id: int,
    payload: CaseUpdateIn,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    c = comp.cases.update(actor.clinic_id, case_id, payload.fields_set())
    return {"success": True, "case": case_flat(c)}


@app.put("/cases/{case_id}/status")
def change_status(
    case_id: int,
    payload: StatusIn,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    # validate before the lookup: an unknown status is a 400 even for a missing case
    new_status = parse_status(payload.status)
    c = comp.transitions.transition(case_id, new_status, actor, note=payload.note, cost_value=payload.cost_value)
    return {"success": True, "case": case_flat(c)}


@app.put("/cases/{case_id}/cost")
def correct_cost(
    case_id: int,
    payload: CostIn,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    c = comp.cases.set_cost(actor.clinic_id, case_id, payload.cost_value)
    return {"success": True, "costValue": float(c.cost_value), "case": case_flat(c)}


@app.delete("/cases/{case_id}")
def cancel_case(
    case_id: int,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    c = comp.transitions.cancel(case_id, actor)
    return {"success": True, "case": case_flat(c)}


@app.post("/cases/{case_id}/messages", status_code=status.HTTP_201_CREATED)
def post_message(
    case_id: int,
    payload: MessageIn,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    m = comp.messages.post(actor, case_id, payload.body or "")
    return {"success": True, "message": message_flat(m)}


@app.put("/cases/{case_id}/messages/read")
def read_messages(
    case_id: int,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    changed = comp.messages.mark_read(actor, case_id)
    return {"success": True, "markedRead": changed}


@app.post("/cases/{case_id}/attachments", status_code=status.HTTP_201_CREATED)
def add_attachment(
    case_id: int,
    payload: AttachmentIn,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    a = comp.cases.add_attachment(actor, case_id, **payload.model_dump())
    return {"success": True, "attachment": attachment_flat(a)}



# Directory (patients / professionals)

@app.get("/patients")
def list_patients(actor: Actor = Depends(get_actor), comp: Components = Depends(get_components)) -> dict[str, Any]:
    return {"success": True, "patients": list_patients_flat(comp.db, actor.clinic_id)}


@app.post("/patients", status_code=status.HTTP_201_CREATED)
def add_patient(
    payload: PatientIn,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    pid = create_patient(
        comp.db, actor.clinic_id, payload.name or "", phone=payload.phone, email=payload.email, mobile=payload.mobile
    )
    return {"success": True, "id": pid}


@app.get("/professionals")
def list_professionals(actor: Actor = Depends(get_actor), comp: Components = Depends(get_components)) -> dict[str, Any]:
    return {"success": True, "professionals": list_professionals_flat(comp.db, actor.clinic_id)}


@app.post("/professionals", status_code=status.HTTP_201_CREATED)
def add_professional(
    payload: ProfessionalIn,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    pid = create_professional(comp.db, actor.clinic_id, payload.name or "", icon=payload.icon)
    return {"success": True, "id": pid}


@app.get("/patients/{patient_id}/cases")
def patient_cases(
    patient_id: int,
    status_: str | None = Query(None, alias="status"),
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    cases, stats = comp.cases.list_for_patient(
        actor.clinic_id, patient_id, parse_status(status_) if status_ else None
    )
    return {"success": True, "cases": cases, "stats": stats}



# Finance

@app.get("/finance/summary")
def finance_summary(
    date_from: date | None = Query(None, alias="dateFrom"),
    date_to: date | None = Query(None, alias="dateTo"),
    lab_id: int | None = Query(None, alias="labId"),
    professional_id: int | None = Query(None, alias="professionalId"),
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    summary = comp.finance.summarize(
        actor.clinic_id, date_from=date_from, date_to=date_to, lab_id=lab_id, professional_id=professional_id
    )
    return {"success": True, **summary.to_dict(), "records": summary.records}



# Laboratories

@app.get("/labs")
def list_labs(actor: Actor = Depends(get_actor), comp: Components = Depends(get_components)) -> dict[str, Any]:
    return {"success": True, "labs": comp.labs.list(actor.clinic_id)}


@app.post("/labs", status_code=status.HTTP_201_CREATED)
def create_lab(
    payload: LabIn,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    lab = comp.labs.create(actor.clinic_id, payload.fields_set())
    return {"success": True, "lab": lab_flat(lab)}


@app.put("/labs/{lab_id}")
def update_lab(
    lab_id: int,
    payload: LabIn,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    lab = comp.labs.update(actor.clinic_id, lab_id, payload.fields_set())
    return {"success": True, "lab": lab_flat(lab)}


@app.delete("/labs/{lab_id}")
def delete_lab(
    lab_id: int,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    comp.labs.deactivate(actor.clinic_id, lab_id)
    return {"success": True}


@app.get("/labs/{lab_id}/prices")
def list_prices(
    lab_id: int,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    prices, by_material = comp.labs.list_prices(actor.clinic_id, lab_id)
    return {"success": True, "prices": prices, "byMaterial": by_material}


@app.post("/labs/{lab_id}/prices", status_code=status.HTTP_201_CREATED)
def add_price(
    lab_id: int,
    payload: PriceIn,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    p = comp.labs.add_price(actor.clinic_id, lab_id, payload.material, payload.procedure, payload.value, payload.note)
    return {"success": True, "price": price_flat(p)}


@app.post("/labs/{lab_id}/prices/bulk", status_code=status.HTTP_201_CREATED)
def add_prices_bulk(
    lab_id: int,
    payload: PricesBulkIn,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    created = comp.labs.add_prices_bulk(actor.clinic_id, lab_id, [p.model_dump() for p in payload.prices])
    return {"success": True, "prices": [price_flat(p) for p in created]}


@app.put("/lab-prices/{price_id}")
def update_price(
    price_id: int,
    payload: PriceIn,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    p = comp.labs.update_price(actor.clinic_id, price_id, payload.fields_set())
    return {"success": True, "price": price_flat(p)}


@app.delete("/lab-prices/{price_id}")
def delete_price(
    price_id: int,
    actor: Actor = Depends(get_actor),
    comp: Components = Depends(get_components),
) -> dict[str, Any]:
    comp.labs.deactivate_price(actor.clinic_id, price_id)
    return {"success": True}
