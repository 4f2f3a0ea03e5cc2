from __future__ import annotations

from decimal import Decimal

import pytest

from dental_office.audit import Actor
from dental_office.cases import CaseFilters
from dental_office.errors import InvalidStatus, NotFound, ValidationError
from dental_office.models import CaseStatus, PieceKind, Technique, Urgency

from .conftest import CLINIC_ID, OTHER_CLINIC_ID


# =============================================================================
# Create / update
# =============================================================================

def test_create_applies_defaults(comp, make_case, clock):
    c = make_case()

    assert c.code.startswith("CP-2026-")
    assert c.piece_kind is PieceKind.DEFINITIVE
    assert c.technique is Technique.CONVENTIONAL
    assert c.urgency is Urgency.NORMAL
    assert c.teeth == []
    assert c.finalized_at is None
    assert c.created_at == clock.now


def test_create_keeps_given_fields(make_case, directory):
    c = make_case(
        lab_id=directory.lab_id,
        professional_id=directory.professional_id,
        teeth=["21", "11", "12"],
        urgency="urgent",
        piece_kind="temporary",
        agreed_value="180.5",
        date_promised="2026-03-20",
        group_id="grp-1",
    )

    assert c.teeth == ["21", "11", "12"]
    assert c.urgency is Urgency.URGENT
    assert c.piece_kind is PieceKind.TEMPORARY
    assert c.agreed_value == Decimal("180.50")
    assert c.group_id == "grp-1"


@pytest.mark.parametrize(
    "fields",
    [
        {"work_type": "crown"},
        {"patient_id": None, "work_type": "crown"},
        {"patient_id": "", "work_type": "crown"},
    ],
)
def test_create_requires_patient_and_work_type(comp, actor, directory, fields):
    with pytest.raises(ValidationError):
        comp.cases.create(actor, fields)


@pytest.mark.parametrize(
    "extra",
    [
        {"teeth": ["19"]},
        {"teeth": ["11", "11"]},
        {"teeth": "11"},
        {"urgency": "asap"},
        {"agreed_value": "-1"},
        {"agreed_value": "abc"},
        {"date_promised": "20/03/2026"},
        {"status": "finalized"},
        {"code": "CP-2026-AAAAAA"},
        {"group_id": "x" * 37},
    ],
)
def test_create_rejects_bad_fields(make_case, extra):
    with pytest.raises(ValidationError):
        make_case(**extra)


def test_create_rejects_blank_work_type(make_case):
    with pytest.raises(ValidationError):
        make_case(work_type="  ")


def test_create_accepts_deciduous_teeth(make_case):
    assert make_case(teeth=["55", "61"]).teeth == ["55", "61"]


def test_create_rejects_references_of_other_clinic(comp, actor, directory):
    with pytest.raises(NotFound):
        comp.cases.create(actor, {"patient_id": directory.foreign_patient_id, "work_type": "crown"})


def test_create_rejects_unknown_lab(make_case):
    with pytest.raises(NotFound):
        make_case(lab_id=9999)


def test_update_changes_descriptive_fields(comp, make_case, directory, clock):
    c = make_case()
    clock.advance(hours=1)

    c = comp.cases.update(CLINIC_ID, c.id, {"lab_id": directory.other_lab_id, "shade": "A2", "teeth": ["36"]})

    assert c.lab_id == directory.other_lab_id
    assert c.shade == "A2"
    assert c.teeth == ["36"]
    assert c.updated_at == clock.now


@pytest.mark.parametrize("fields", [{"status": "finalized"}, {"patient_id": 1}, {"cost_value": "10"}, {"nope": 1}])
def test_update_rejects_status_and_read_only_fields(comp, make_case, fields):
    c = make_case()
    with pytest.raises(ValidationError):
        comp.cases.update(CLINIC_ID, c.id, fields)


def test_update_of_other_clinic_case_is_not_found(comp, make_case):
    c = make_case()
    with pytest.raises(NotFound):
        comp.cases.update(OTHER_CLINIC_ID, c.id, {"shade": "B1"})


def test_set_cost(comp, make_case):
    c = make_case(cost_value="100")

    c = comp.cases.set_cost(CLINIC_ID, c.id, "95.499")

    assert c.cost_value == Decimal("95.50")
    with pytest.raises(ValidationError):
        comp.cases.set_cost(CLINIC_ID, c.id, None)


@pytest.mark.parametrize("amount", ["100000000", "123456789012.5", "1e30", 1e30])
def test_set_cost_rejects_amounts_beyond_column_range(comp, make_case, amount):
    c = make_case(cost_value="100")

    with pytest.raises(ValidationError):
        comp.cases.set_cost(CLINIC_ID, c.id, amount)

    assert comp.cases.get(CLINIC_ID, c.id).cost_value == Decimal("100.00")


def test_set_cost_accepts_the_largest_amount(comp, make_case):
    c = make_case()

    assert comp.cases.set_cost(CLINIC_ID, c.id, "99999999.99").cost_value == Decimal("99999999.99")


def test_get_is_scoped_to_clinic(comp, make_case):
    c = make_case()
    assert comp.cases.get(CLINIC_ID, c.id).id == c.id
    with pytest.raises(NotFound):
        comp.cases.get(OTHER_CLINIC_ID, c.id)


# =============================================================================
# List projection
# =============================================================================

def test_list_is_newest_first_with_names(comp, make_case, directory, clock):
    first = make_case(lab_id=directory.lab_id, professional_id=directory.professional_id)
    clock.advance(minutes=1)
    second = make_case()

    page = comp.cases.list(CLINIC_ID)

    assert [c["id"] for c in page.cases] == [second.id, first.id]
    listed = page.cases[1]
    assert listed["patientName"] == "Ana Souza"
    assert listed["labName"] == "Lab Prime"
    assert listed["professionalName"] == "Dr. Silva"
    assert listed["attachmentCount"] == 0
    assert listed["unreadMessages"] == 0


def test_list_hides_other_clinics(comp, make_case):
    make_case()
    assert comp.cases.list(OTHER_CLINIC_ID).stats.total == 0


def test_list_filters(comp, make_case, directory, actor):
    make_case(lab_id=directory.lab_id, urgency="urgent")
    make_case(lab_id=directory.other_lab_id)
    c = make_case(patient_id=directory.other_patient_id)
    comp.transitions.transition(c.id, "sent_to_lab", actor)

    by_lab = comp.cases.list(CLINIC_ID, CaseFilters.build(lab_id=directory.lab_id))
    by_status = comp.cases.list(CLINIC_ID, CaseFilters.build(status="sent_to_lab"))
    by_patient = comp.cases.list(CLINIC_ID, CaseFilters.build(patient_id=directory.other_patient_id))
    by_urgency = comp.cases.list(CLINIC_ID, CaseFilters.build(urgency="urgent"))

    assert by_lab.stats.total == 1
    assert [x["id"] for x in by_status.cases] == [c.id]
    assert [x["id"] for x in by_patient.cases] == [c.id]
    assert by_urgency.stats.total == 1


def test_list_rejects_unknown_status_filter():
    with pytest.raises(InvalidStatus):
        CaseFilters.build(status="lost")


def test_stats_overdue_and_urgent(comp, make_case, actor):
    # today in the clinic is 2026-03-10
    late = make_case(date_promised="2026-03-09", urgency="emergency")
    make_case(date_promised="2026-03-10")
    make_case(date_promised="2026-03-11", urgency="urgent")
    make_case()

    stats = comp.cases.list(CLINIC_ID).stats
    assert (stats.total, stats.in_progress, stats.overdue, stats.urgent) == (4, 4, 1, 2)

    comp.transitions.transition(late.id, "finalized", actor)

    stats = comp.cases.list(CLINIC_ID).stats
    assert (stats.in_progress, stats.finalized, stats.overdue, stats.urgent) == (3, 1, 0, 1)


def test_cancelled_cases_leave_open_counts(comp, make_case, actor):
    c = make_case(date_promised="2026-03-01", urgency="urgent")
    comp.transitions.cancel(c.id, actor)

    stats = comp.cases.list(CLINIC_ID).stats

    assert (stats.total, stats.in_progress, stats.overdue, stats.urgent) == (1, 0, 0, 0)


def test_stats_cover_filtered_set_not_page(comp, make_case, directory):
    for _ in range(5):
        make_case(lab_id=directory.lab_id, urgency="urgent")
    make_case(lab_id=directory.other_lab_id, urgency="urgent")

    page = comp.cases.list(CLINIC_ID, CaseFilters.build(lab_id=directory.lab_id), limit=2)

    assert len(page.cases) == 2
    assert page.stats.total == 5
    assert page.stats.urgent == 5


@pytest.mark.parametrize(
    "limit, offset, size, has_more",
    [
        (2, 0, 2, True),
        (2, 2, 2, True),
        (2, 4, 1, False),
        (5, 0, 5, False),
        (10, 0, 5, False),
        (2, 10, 0, False),
    ],
)
def test_pagination_has_more(comp, make_case, limit, offset, size, has_more):
    for _ in range(5):
        make_case()

    page = comp.cases.list(CLINIC_ID, limit=limit, offset=offset)

    assert len(page.cases) == size
    assert page.has_more is has_more
    assert page.pagination() == {"limit": limit, "offset": offset, "total": 5, "hasMore": has_more}


def test_pages_do_not_overlap(comp, make_case, clock):
    for _ in range(5):
        clock.advance(minutes=1)
        make_case()

    seen = []
    offset = 0
    while True:
        page = comp.cases.list(CLINIC_ID, limit=2, offset=offset)
        seen += [c["id"] for c in page.cases]
        if not page.has_more:
            break
        offset += 2

    assert len(seen) == 5
    assert len(set(seen)) == 5


@pytest.mark.parametrize("limit, offset", [(0, 0), (201, 0), (10, -1)])
def test_page_bounds(comp, limit, offset):
    with pytest.raises(ValidationError):
        comp.cases.list(CLINIC_ID, limit=limit, offset=offset)


def test_list_counts_unread_lab_messages(comp, make_case, actor, lab_actor):
    c = make_case()
    comp.messages.post(lab_actor, c.id, "Scan received")
    comp.messages.post(lab_actor, c.id, "Which shade?")
    comp.messages.post(actor, c.id, "A2")

    listed = comp.cases.list(CLINIC_ID).cases[0]

    assert listed["unreadMessages"] == 2


# =============================================================================
# Patient cases / attachments
# =============================================================================

def test_cases_of_patient(comp, make_case, directory, actor):
    a = make_case()
    make_case()
    make_case(patient_id=directory.other_patient_id)
    comp.transitions.transition(a.id, "finalized", actor)

    cases, stats = comp.cases.list_for_patient(CLINIC_ID, directory.patient_id)
    finalized, _ = comp.cases.list_for_patient(CLINIC_ID, directory.patient_id, status=CaseStatus.FINALIZED)

    assert len(cases) == 2
    assert stats == {"total": 2, "finalized": 1, "inProgress": 1}
    assert [c["id"] for c in finalized] == [a.id]


def test_cases_of_foreign_patient_is_not_found(comp, directory):
    with pytest.raises(NotFound):
        comp.cases.list_for_patient(CLINIC_ID, directory.foreign_patient_id)


def test_attachment_versions_per_file_name(comp, make_case, actor, lab_actor):
    c = make_case()

    v1 = comp.cases.add_attachment(actor, c.id, "scan", "arch.stl", "https://files.example/1")
    v2 = comp.cases.add_attachment(lab_actor, c.id, "scan", "arch.stl", "https://files.example/2", size_bytes=2048)
    other = comp.cases.add_attachment(actor, c.id, "photo", "smile.jpg", "https://files.example/3")

    assert (v1.version, v2.version, other.version) == (1, 2, 1)
    assert v2.uploaded_by.value == "lab"
    assert len(comp.cases.list_attachments(c.id)) == 3
    assert comp.cases.list(CLINIC_ID).cases[0]["attachmentCount"] == 3


def test_attachment_validation_and_scope(comp, make_case, actor):
    c = make_case()
    with pytest.raises(ValidationError):
        comp.cases.add_attachment(actor, c.id, "scan", "", "https://files.example/1")
    with pytest.raises(ValidationError):
        comp.cases.add_attachment(actor, c.id, "scan", "a.stl", "https://files.example/1", size_bytes=-1)
    stranger = Actor(clinic_id=OTHER_CLINIC_ID, name="Dr. Other")
    with pytest.raises(NotFound):
        comp.cases.add_attachment(stranger, c.id, "scan", "a.stl", "https://files.example/1")
