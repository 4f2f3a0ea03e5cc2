from __future__ import annotations

import argparse

from . import config
from .audit import Actor
from .auth_security import create_access_token
from .cases import CaseFilters
from .config import setup_logging
from .db import get_database
from .errors import DomainError
from .models import ActorRole
from .seed import DEMO_CLINIC_ID, seed_base
from .services import (
    build_components,
    create_patient,
    create_professional,
    init_db,
    list_patients_flat,
    list_professionals_flat,
)
from .validators import parse_date


def _actor(args: argparse.Namespace) -> Actor:
    return Actor(clinic_id=args.clinic_id, name=args.actor, role=ActorRole(args.role))


def cmd_init(args: argparse.Namespace) -> None:
    db = get_database()
    init_db(db)
    print(f"DB ready: {db.url}")


def cmd_seed(args: argparse.Namespace) -> None:
    seed_base(get_database(), clinic_id=args.clinic_id)
    print(f"Seed completed for clinic {args.clinic_id}.")


def cmd_token(args: argparse.Namespace) -> None:
    """Dev token: identity issuance belongs to an external provider."""
    print(create_access_token(
        subject=args.subject,
        clinic_id=args.clinic_id,
        name=args.actor,
        role=args.role,
        expires_minutes=args.minutes,
    ))


def cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    uvicorn.run("dental_office.api_main:app", host=args.host, port=args.port, reload=args.reload)


def cmd_patients(args: argparse.Namespace) -> None:
    for p in list_patients_flat(get_database(), args.clinic_id):
        print(f"{p['id']} | {p['name']} | {p['phone'] or '-'} | {p['email'] or '-'}")


def cmd_add_patient(args: argparse.Namespace) -> None:
    pid = create_patient(get_database(), args.clinic_id, args.name, phone=args.phone, email=args.email)
    print(f"Patient created: {pid}")


def cmd_professionals(args: argparse.Namespace) -> None:
    for p in list_professionals_flat(get_database(), args.clinic_id):
        print(f"{p['id']} | {p['name']}")


def cmd_add_professional(args: argparse.Namespace) -> None:
    pid = create_professional(get_database(), args.clinic_id, args.name, icon=args.icon)
    print(f"Professional created: {pid}")


def cmd_list_cases(args: argparse.Namespace) -> None:
    comp = build_components(get_database())
    filters = CaseFilters.build(status=args.status, lab_id=args.lab_id, urgency=args.urgency)
    page = comp.cases.list(args.clinic_id, filters, limit=args.limit, offset=args.offset)

    for c in page.cases:
        promised = c["datePromised"] or "-"
        print(f"{c['id']} | {c['code']} | {c['status']} | {c['patientName']} | {c['labName'] or '-'} | {promised}")
    st = page.stats
    print(
        f"total={st.total} in_progress={st.in_progress} finalized={st.finalized} "
        f"overdue={st.overdue} urgent={st.urgent} has_more={page.has_more}"
    )


def cmd_create_case(args: argparse.Namespace) -> None:
    comp = build_components(get_database())
    fields = {
        "patient_id": args.patient_id,
        "work_type": args.work_type,
        "lab_id": args.lab_id,
        "teeth": args.teeth or [],
        "urgency": args.urgency,
        "date_promised": args.promised,
    }
    c = comp.cases.create(_actor(args), {k: v for k, v in fields.items() if v is not None})
    print(f"Case created: {c.id} ({c.code})")


def cmd_status(args: argparse.Namespace) -> None:
    comp = build_components(get_database())
    c = comp.transitions.transition(args.case_id, args.status, _actor(args), note=args.note, cost_value=args.cost)
    print(f"{c.code}: {c.status.value}")


def cmd_summary(args: argparse.Namespace) -> None:
    comp = build_components(get_database())
    summary = comp.finance.summarize(
        args.clinic_id,
        date_from=parse_date(args.date_from, "--date-from"),
        date_to=parse_date(args.date_to, "--date-to"),
    )
    print(f"Finalized cases: {summary.count} | total cost: {summary.total}")
    for name, bucket in sorted(summary.by_lab.items()):
        print(f"  lab {name}: {bucket.count} cases, {bucket.total}")
    for name, bucket in sorted(summary.by_professional.items()):
        print(f"  professional {name}: {bucket.count} cases, {bucket.total}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="dental-office", description="Dental Office CLI (prosthetic cases)")
    p.add_argument("--clinic-id", type=int, default=DEMO_CLINIC_ID)
    p.add_argument("--actor", default="Clinician", help="Name written in history and messages")
    p.add_argument("--role", choices=[r.value for r in ActorRole], default=ActorRole.CLINICIAN.value)
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Create DB tables")
    p_init.set_defaults(func=cmd_init)

    p_seed = sub.add_parser("seed", help="Load demo data")
    p_seed.set_defaults(func=cmd_seed)

    p_token = sub.add_parser("token", help="Mint a dev bearer token")
    p_token.add_argument("--subject", default="dev-user")
    p_token.add_argument("--minutes", type=int, default=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    p_token.set_defaults(func=cmd_token)

    p_serve = sub.add_parser("serve", help="Run the API with uvicorn")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true")
    p_serve.set_defaults(func=cmd_serve)

    p_pat = sub.add_parser("patients", help="List patients")
    p_pat.set_defaults(func=cmd_patients)

    p_add_pat = sub.add_parser("add-patient", help="Register a patient")
    p_add_pat.add_argument("--name", required=True)
    p_add_pat.add_argument("--phone", default=None)
    p_add_pat.add_argument("--email", default=None)
    p_add_pat.set_defaults(func=cmd_add_patient)

    p_prof = sub.add_parser("professionals", help="List active professionals")
    p_prof.set_defaults(func=cmd_professionals)

    p_add_prof = sub.add_parser("add-professional", help="Register a professional")
    p_add_prof.add_argument("--name", required=True)
    p_add_prof.add_argument("--icon", default=None)
    p_add_prof.set_defaults(func=cmd_add_professional)

    p_list = sub.add_parser("cases", help="List cases")
    p_list.add_argument("--status", default=None)
    p_list.add_argument("--lab-id", type=int, default=None)
    p_list.add_argument("--urgency", default=None)
    p_list.add_argument("--limit", type=int, default=None)
    p_list.add_argument("--offset", type=int, default=0)
    p_list.set_defaults(func=cmd_list_cases)

    p_create = sub.add_parser("create-case", help="Create a case")
    p_create.add_argument("--patient-id", type=int, required=True)
    p_create.add_argument("--work-type", required=True)
    p_create.add_argument("--lab-id", type=int, default=None)
    p_create.add_argument("--teeth", nargs="*", default=None, help="FDI ids, e.g. 11 21")
    p_create.add_argument("--urgency", default=None)
    p_create.add_argument("--promised", default=None, help="ISO date, e.g. 2026-03-20")
    p_create.set_defaults(func=cmd_create_case)

    p_status = sub.add_parser("status", help="Change the status of a case")
    p_status.add_argument("--case-id", type=int, required=True)
    p_status.add_argument("--status", required=True)
    p_status.add_argument("--note", default=None)
    p_status.add_argument("--cost", default=None)
    p_status.set_defaults(func=cmd_status)

    p_sum = sub.add_parser("summary", help="Cost summary of finalized cases")
    p_sum.add_argument("--date-from", default=None)
    p_sum.add_argument("--date-to", default=None)
    p_sum.set_defaults(func=cmd_summary)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    setup_logging()
    init_db(get_database())  # make sure tables exist
    try:
        args.func(args)
    except DomainError as e:
        parser.exit(1, f"Error ({e.kind}): {e.message}\n")


if __name__ == "__main__":
    main()
