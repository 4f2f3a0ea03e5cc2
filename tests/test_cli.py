from __future__ import annotations

import sys

import pytest

from dental_office import cli
from dental_office.auth_security import decode_token


@pytest.fixture
def run(db, monkeypatch, capsys):
    monkeypatch.setattr(cli, "get_database", lambda: db)

    def _run(*argv: str) -> str:
        monkeypatch.setattr(sys, "argv", ["dental-office", *argv])
        cli.main()
        return capsys.readouterr().out

    return _run


def test_seed_is_idempotent(run):
    run("seed")
    run("seed")

    patients = run("patients").strip().splitlines()
    professionals = run("professionals").strip().splitlines()

    assert len(patients) == 3
    assert [line.split(" | ")[1] for line in professionals] == ["Dr. Silva", "Dra. Costa"]


def test_case_lifecycle_from_the_command_line(run):
    run("seed")
    patient_id = run("add-patient", "--name", "Diego Rocha").strip().rsplit(" ", 1)[1]

    out = run("--actor", "Dr. Silva", "create-case", "--patient-id", patient_id, "--work-type", "crown", "--teeth", "11")
    case_id = out.split(":")[1].split("(")[0].strip()

    assert run("status", "--case-id", case_id, "--status", "finalized", "--cost", "150").strip().endswith("finalized")
    listing = run("cases", "--status", "finalized")
    assert "Diego Rocha" in listing
    assert "total=1" in listing
    assert "total cost: 150.00" in run("summary")


def test_domain_errors_exit_non_zero(run, capsys):
    with pytest.raises(SystemExit) as exc:
        run("status", "--case-id", "999", "--status", "finalized")

    assert exc.value.code == 1
    assert "not_found" in capsys.readouterr().err


def test_token_carries_clinic_and_role(run):
    token = run("--clinic-id", "7", "--role", "lab", "--actor", "Lab Prime", "token").strip()

    payload = decode_token(token)

    assert payload["clinic_id"] == 7
    assert payload["role"] == "lab"
    assert payload["name"] == "Lab Prime"


def test_summary_rejects_non_iso_dates(run, capsys):
    with pytest.raises(SystemExit) as exc:
        run("summary", "--date-from", "10/03/2026")

    assert exc.value.code == 1
    err = capsys.readouterr().err
    assert "validation_error" in err
    assert "--date-from" in err
    assert "Traceback" not in err
