# tests/test_claim_ledger.py
import pytest

from clinic_claims.model import ClaimStatus, RecordKind
from clinic_claims.services.claim_ledger import ClaimLedger
from clinic_claims.services.errors import DuplicateClaimError, ErrorKind, RecordNotFound


@pytest.fixture
def ledger(db_session):
    return ClaimLedger(db_session)


def claim(ledger, encounter_id="E1", status=ClaimStatus.submitted, **fields):
    fields.setdefault("patient_id", "PAT-1")
    return ledger.insert(
        encounter_id=encounter_id,
        provider_id="JUBILEE",
        status=status,
        line_items=[{"name": "Consultation", "line_total": 20000}],
        total_amount=20000,
        **fields,
    )


def test_insert_and_get(ledger):
    record = claim(ledger, claim_code="JUB_E1_1")

    fetched = ledger.get(record.claim_id)
    assert fetched.claim_code == "JUB_E1_1"
    assert fetched.status == ClaimStatus.submitted
    assert fetched.kind == RecordKind.claim
    assert fetched.created_at is not None


def test_second_live_claim_for_encounter_rejected(ledger):
    first = claim(ledger)

    with pytest.raises(DuplicateClaimError) as exc:
        claim(ledger, status=ClaimStatus.processing)

    assert exc.value.kind == ErrorKind.duplicate_claim
    assert exc.value.claim_id == first.claim_id


def test_cancelled_and_pending_claims_do_not_block(ledger):
    claim(ledger, status=ClaimStatus.cancelled)
    claim(ledger, status=ClaimStatus.pending)

    live = claim(ledger, status=ClaimStatus.submitted)

    assert ledger.find_live_claim("E1", "JUBILEE").claim_id == live.claim_id


def test_same_encounter_other_provider_allowed(ledger):
    claim(ledger)
    other = ledger.insert(encounter_id="E1", provider_id="GA", status=ClaimStatus.submitted, line_items=[])

    assert other.provider_id == "GA"


def test_preauthorization_rows_are_not_live_claims(ledger):
    ledger.insert(encounter_id="E1", provider_id="JUBILEE", kind=RecordKind.preauthorization, status=ClaimStatus.approved, submission_id="S1")

    assert ledger.find_live_claim("E1", "JUBILEE") is None
    assert len(ledger.find_preauthorizations("E1", "JUBILEE")) == 1
    assert ledger.find_by_submission_id("S1").kind == RecordKind.preauthorization


def test_reserve_reuses_failed_claim(ledger):
    failed = claim(ledger, status=ClaimStatus.pending, failure_reason="rejected")

    reserved = ledger.reserve_submission("E1", "JUBILEE", claim_code="JUB_E1_2", total_amount=30000)

    assert reserved.claim_id == failed.claim_id
    assert reserved.status == ClaimStatus.processing
    assert reserved.failure_reason is None
    assert reserved.claim_code == "JUB_E1_2"
    assert len(ledger.list_by_patient("PAT-1")) == 1


def test_reserve_blocked_by_live_claim(ledger):
    live = claim(ledger)

    with pytest.raises(DuplicateClaimError) as exc:
        ledger.reserve_submission("E1", "JUBILEE", patient_id="PAT-1")

    assert exc.value.claim_id == live.claim_id


def test_update_status(ledger):
    record = claim(ledger, status=ClaimStatus.processing)

    updated = ledger.update_status(record.claim_id, ClaimStatus.submitted, provider_claim_number="SUB-1")

    assert updated.status == ClaimStatus.submitted
    assert updated.provider_claim_number == "SUB-1"


def test_update_unknown_claim(ledger):
    with pytest.raises(RecordNotFound):
        ledger.update_status("missing", ClaimStatus.paid)


def test_list_by_patient_newest_first(ledger):
    older = claim(ledger, encounter_id="E1")
    newer = claim(ledger, encounter_id="E2")
    claim(ledger, encounter_id="E3", patient_id="PAT-9")

    records = ledger.list_by_patient("PAT-1")

    assert [r.claim_id for r in records] == [newer.claim_id, older.claim_id]
