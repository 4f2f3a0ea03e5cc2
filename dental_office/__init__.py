"""
Dental Office backend: prosthetic cases between the clinic and partner labs.

Layout:
- config.py      : environment (.env), logging, clinic timezone
- db.py          : SQLAlchemy engine, sessions and per-case locks
- models.py      : ORM models and enums
- errors.py      : domain exceptions (each with a machine-readable kind)
- codes.py       : case code generator (CP-<year>-XXXXXX)
- audit.py       : status history (append-only)
- transitions.py : status transition engine and policy
- messages.py    : clinic <-> lab message thread
- cases.py       : case store, filters, pagination, stats
- finance.py     : cost summary over finalized cases
- labs.py        : laboratories and price table
- services.py    : DB bootstrap, directory lookups, component wiring
- api_main.py    : FastAPI app
- seed.py        : demo data
- cli.py         : command line
"""
