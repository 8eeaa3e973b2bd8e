# tests/test_orchestrator.py
import asyncio
from decimal import Decimal

import httpx
import pytest
import respx

from conftest import CARD_OK, CLAIM_OK, GA_MEMBER, JUBILEE_MEMBER, VERIFY_NO_AUTH, VERIFY_OK
from clinic_claims.model import Benefits, ClaimStatus, ProviderId, RecordKind, TreatmentItem
from clinic_claims.services.authorization import SessionStore
from clinic_claims.services.errors import (
    ClaimEngineError,
    DuplicateClaimError,
    ErrorKind,
    RecordNotFound,
    TokenExpired,
    TransientProviderError,
)
from clinic_claims.services.orchestrator import ClaimOrchestrator, upstream_claim_status
from clinic_claims.services.transport import JubileeTransport


def claim_rows(orchestrator, patient_id="PAT-1"):
    return [r for r in orchestrator.list_claims_by_patient(patient_id) if r.kind == RecordKind.claim]


@pytest.mark.anyio
async def test_jubilee_claim_submitted(orchestrator, jubilee_transport, basket, jubilee_meta):
    record = await orchestrator.submit_claim("E1", "jubilee", basket, jubilee_meta)

    assert record.status == ClaimStatus.submitted
    assert record.provider_id == "JUBILEE"
    assert record.authorization_number == "556677"
    assert record.provider_claim_number == "SUB-900"
    assert record.submission_id == "SUB-900"
    assert record.claim_code.startswith("JUB_E1_")
    assert record.total_amount == 50000
    assert record.patient_id == "PAT-1"
    assert record.member_id == JUBILEE_MEMBER
    assert len(record.line_items) == 2
    assert record.raw_response == CLAIM_OK

    entity = jubilee_transport.calls_to("send_claim")[0]["entities"][0]
    assert entity["AuthorizationNo"] == "556677"
    # deductible 5000 plus 10% of the rest
    assert entity["AmountClaimed"] == "40500.00"


@pytest.mark.anyio
async def test_duplicate_claim_makes_no_calls(orchestrator, jubilee_transport, basket, jubilee_meta):
    first = await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)
    calls = len(jubilee_transport.calls)

    with pytest.raises(DuplicateClaimError) as exc:
        await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    assert exc.value.kind == ErrorKind.duplicate_claim
    assert exc.value.details["claim_id"] == first.claim_id
    assert len(jubilee_transport.calls) == calls


@pytest.mark.anyio
@pytest.mark.parametrize("items", [[], [TreatmentItem(name="Review", unit_cost=0)]])
async def test_empty_basket_rejected_before_any_call(orchestrator, jubilee_transport, jubilee_meta, items):
    with pytest.raises(ClaimEngineError) as exc:
        await orchestrator.submit_claim("E1", "JUBILEE", items, jubilee_meta)

    assert exc.value.kind == ErrorKind.empty_basket
    assert jubilee_transport.calls == []
    assert claim_rows(orchestrator) == []


@pytest.mark.anyio
async def test_concurrent_submissions_yield_one_claim(orchestrator, basket, jubilee_meta):
    results = await asyncio.gather(
        orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta),
        orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta),
        return_exceptions=True,
    )

    submitted = [r for r in results if not isinstance(r, Exception)]
    duplicates = [r for r in results if isinstance(r, DuplicateClaimError)]
    assert len(submitted) == 1
    assert len(duplicates) == 1
    assert len(claim_rows(orchestrator)) == 1


@pytest.mark.anyio
async def test_unknown_and_unintegrated_providers(orchestrator, basket, jubilee_meta):
    with pytest.raises(ClaimEngineError) as exc:
        await orchestrator.submit_claim("E1", "AAR", basket, jubilee_meta)
    assert exc.value.kind == ErrorKind.unknown

    with pytest.raises(ClaimEngineError) as exc:
        await orchestrator.submit_claim("E1", "NHIF", basket, jubilee_meta)
    assert exc.value.kind == ErrorKind.unknown
    assert "manually" in exc.value.message


@pytest.mark.anyio
async def test_ga_claim_processing_and_session_released(orchestrator, smart_transport, db_session, basket, ga_meta):
    smart_transport.scripts["final_claim"] = [{"claim_id": "GA-CLM-2", "status": "PENDING"}]

    record = await orchestrator.submit_claim("E2", "GA", basket, ga_meta)

    assert record.status == ClaimStatus.processing
    assert record.provider_claim_number == "GA-CLM-2"
    assert record.claim_code.startswith("CLAIM_E2_")

    body = smart_transport.calls_to("final_claim")[0]
    assert body["session_id"] == "S-100"
    invoice = body["invoices"][0]
    assert invoice["gross_amount"] == 50000
    assert invoice["payment_modifiers"] == [{"type": "2", "amount": 10000, "reference_number": record.claim_code}]
    assert invoice["amount"] == 40000
    assert SessionStore(db_session).get("E2", "GA") is None


@pytest.mark.anyio
async def test_ga_cancelled_response(orchestrator, smart_transport, basket, ga_meta):
    smart_transport.scripts["final_claim"] = [{"data": {"claim_id": "GA-CLM-3", "claim_status": "cancelled"}}]

    record = await orchestrator.submit_claim("E2", "GA", basket, ga_meta)

    assert record.status == ClaimStatus.cancelled
    assert record.provider_claim_number == "GA-CLM-3"


@pytest.mark.anyio
async def test_ga_without_session_records_nothing(orchestrator, smart_transport, basket, ga_meta):
    smart_transport.scripts["visit"] = [{"content": []}]

    with pytest.raises(ClaimEngineError) as exc:
        await orchestrator.submit_claim("E2", "GA", basket, ga_meta)

    assert exc.value.kind == ErrorKind.no_session
    assert smart_transport.calls_to("final_claim") == []
    assert claim_rows(orchestrator, "PAT-2") == []


@pytest.mark.anyio
async def test_attachments_dropped_after_rejection(orchestrator, jubilee_transport, basket, jubilee_meta):
    jubilee_transport.scripts["send_claim"] = [{"Status": "ERROR", "Description": "File too large"}, CLAIM_OK]
    meta = jubilee_meta.model_copy(update={"attachments": {"ClaimFile": "JVBERi0x" * 10}})

    record = await orchestrator.submit_claim("E1", "JUBILEE", basket, meta)

    sent = jubilee_transport.calls_to("send_claim")
    assert len(sent) == 2
    assert sent[0]["entities"][0]["ClaimFile"] == "JVBERi0x" * 10
    assert sent[1]["entities"][0]["ClaimFile"] is None
    assert record.status == ClaimStatus.submitted
    assert record.raw_request["entities"][0]["ClaimFile"] is None


@pytest.mark.anyio
async def test_rejected_claim_stays_pending_then_retry_reuses_it(orchestrator, jubilee_transport, basket, jubilee_meta):
    jubilee_transport.scripts["send_claim"] = [{"Status": "ERROR", "Description": "Invalid folio item"}, CLAIM_OK]

    with pytest.raises(ClaimEngineError) as exc:
        await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    assert exc.value.kind == ErrorKind.provider_validation_failed
    assert "Invalid folio item" in exc.value.message
    [failed] = claim_rows(orchestrator)
    assert failed.status == ClaimStatus.pending
    assert "Invalid folio item" in failed.failure_reason

    record = await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    assert record.claim_id == failed.claim_id
    assert record.status == ClaimStatus.submitted
    assert record.failure_reason is None
    assert len(claim_rows(orchestrator)) == 1


@pytest.mark.anyio
async def test_rate_limited_submission_is_transient(orchestrator, jubilee_transport, basket, jubilee_meta):
    jubilee_transport.scripts["send_claim"] = [{"Status": "ERROR", "Description": "Too many requests"}]

    with pytest.raises(ClaimEngineError) as exc:
        await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    assert exc.value.kind == ErrorKind.transient
    assert claim_rows(orchestrator)[0].status == ClaimStatus.pending


@pytest.mark.anyio
async def test_transient_verification_retried_once(orchestrator, jubilee_transport, basket, jubilee_meta):
    jubilee_transport.scripts["card_details"] = [TransientProviderError("timeout"), CARD_OK]

    record = await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    assert record.status == ClaimStatus.submitted
    assert len(jubilee_transport.calls_to("card_details")) == 2


@pytest.mark.anyio
async def test_repeated_transient_failure_surfaces(orchestrator, jubilee_transport, basket, jubilee_meta):
    jubilee_transport.scripts["card_details"] = [TransientProviderError("timeout")]

    with pytest.raises(ClaimEngineError) as exc:
        await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    assert exc.value.kind == ErrorKind.transient
    assert exc.value.retryable
    assert len(jubilee_transport.calls_to("card_details")) == 2
    assert orchestrator.list_claims_by_patient("PAT-1") == []


@pytest.mark.anyio
async def test_jubilee_without_authorization_then_approved(orchestrator, jubilee_transport, basket, jubilee_meta):
    jubilee_transport.scripts["check_verification"] = [VERIFY_NO_AUTH]
    jubilee_transport.scripts["send_preauthorization"] = [{"Status": "OK", "Description": "Received", "SubmissionID": "PRE-1"}]
    jubilee_transport.scripts["preauthorization_status"] = [
        {"Status": "OK", "Description": {"preathorizationStatus": "1", "AuthorizationNo": "4455"}}
    ]

    with pytest.raises(ClaimEngineError) as exc:
        await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    assert exc.value.kind == ErrorKind.no_authorization
    assert exc.value.details["submission_id"] == "PRE-1"
    assert jubilee_transport.calls_to("send_claim") == []
    assert claim_rows(orchestrator) == []

    context = await orchestrator.poll_authorization("PRE-1")
    assert context.authorization_number == "4455"

    record = await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    assert record.authorization_number == "4455"
    assert len(jubilee_transport.calls_to("send_preauthorization")) == 1


@pytest.mark.anyio
async def test_denied_preauthorization_blocks_claim(orchestrator, jubilee_transport, basket, jubilee_meta):
    jubilee_transport.scripts["check_verification"] = [VERIFY_NO_AUTH]
    jubilee_transport.scripts["send_preauthorization"] = [{"Status": "OK", "SubmissionID": "PRE-2"}]

    await orchestrator.request_preauthorization("E1", "JUBILEE", basket, jubilee_meta)
    jubilee_transport.scripts["preauthorization_status"] = [{"Status": "OK", "Description": {"preathorizationStatus": "3"}}]
    await orchestrator.poll_authorization("PRE-2")
    jubilee_transport.scripts["send_preauthorization"] = [{"Status": "ERROR", "Description": "Already denied"}]

    with pytest.raises(ClaimEngineError) as exc:
        await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    assert exc.value.kind == ErrorKind.no_authorization
    assert jubilee_transport.calls_to("send_claim") == []


@pytest.mark.anyio
async def test_preauthorization_only_for_jubilee(orchestrator, basket, ga_meta):
    with pytest.raises(ClaimEngineError) as exc:
        await orchestrator.request_preauthorization("E2", "GA", basket, ga_meta)

    assert exc.value.kind == ErrorKind.unknown


@pytest.mark.anyio
async def test_verify_member_invalid_format(orchestrator, jubilee_transport):
    with pytest.raises(ClaimEngineError) as exc:
        await orchestrator.verify_member("JUBILEE", "12-AB")

    assert exc.value.kind == ErrorKind.invalid_member_id
    assert jubilee_transport.calls == []


@pytest.mark.anyio
async def test_verify_ga_member(orchestrator):
    verification = await orchestrator.verify_member("GA", GA_MEMBER)

    assert verification.member_name == "John Doe"
    assert verification.benefits.copayment_percent == Decimal("20")
    assert verification.benefits.remaining_amount == 400000


@pytest.mark.anyio
async def test_verify_cash_is_unknown(orchestrator):
    with pytest.raises(ClaimEngineError) as exc:
        await orchestrator.verify_member("CASH", "anything")

    assert exc.value.kind == ErrorKind.unknown


def test_calculate_copayment_uses_member_benefits(orchestrator, basket):
    configured = orchestrator.calculate_copayment(basket, "GA")
    verified = orchestrator.calculate_copayment(basket, "GA", Benefits(copayment_percent=Decimal("25")))

    assert configured.patient_copayment == 10000
    assert verified.patient_copayment == 12500
    assert verified.insurance_covered == 37500


@pytest.mark.anyio
async def test_claim_status_transitions(orchestrator, basket, jubilee_meta):
    record = await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    assert orchestrator.update_claim_status(record.claim_id, ClaimStatus.approved).status == ClaimStatus.approved
    assert orchestrator.update_claim_status(record.claim_id, ClaimStatus.paid).status == ClaimStatus.paid
    with pytest.raises(ValueError):
        orchestrator.update_claim_status(record.claim_id, ClaimStatus.cancelled)


def test_update_unknown_claim(orchestrator):
    with pytest.raises(RecordNotFound):
        orchestrator.update_claim_status("missing", ClaimStatus.paid)


@pytest.mark.anyio
async def test_claims_listed_newest_first(orchestrator, basket, jubilee_meta):
    first = await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)
    second = await orchestrator.submit_claim("E9", "JUBILEE", basket, jubilee_meta)

    assert [r.claim_id for r in orchestrator.list_claims_by_patient("PAT-1")] == [second.claim_id, first.claim_id]
    assert orchestrator.list_claims_by_patient("nobody") == []


@pytest.mark.anyio
async def test_expired_token_during_submission_reauthenticates(orchestrator, jubilee_transport, basket, jubilee_meta):
    jubilee_transport.scripts["send_claim"] = [TokenExpired("expired"), CLAIM_OK]

    record = await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    assert record.status == ClaimStatus.submitted
    assert jubilee_transport.authentications == 1
    assert len(jubilee_transport.calls_to("send_claim")) == 2


@pytest.mark.anyio
async def test_unexpected_submission_error_frees_the_encounter(orchestrator, jubilee_transport, basket, jubilee_meta):
    jubilee_transport.scripts["send_claim"] = [ValueError("Expecting value: line 1 column 1"), CLAIM_OK]

    with pytest.raises(ValueError):
        await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    [failed] = claim_rows(orchestrator)
    assert failed.status == ClaimStatus.pending
    assert "Expecting value" in failed.failure_reason

    record = await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    assert record.claim_id == failed.claim_id
    assert record.status == ClaimStatus.submitted


@pytest.mark.anyio
async def test_html_login_page_on_reauthentication(db_session, basket, jubilee_meta):
    settings = {"base_url": "https://jubilee.test/api", "username": "clinic", "password": "secret", "provider_code": "P1"}
    token = {"Status": "OK", "Description": {"access_token": "tok-1", "token_type": "Bearer"}}
    transport = JubileeTransport(settings=settings)
    orchestrator = ClaimOrchestrator(db_session, transports={ProviderId.jubilee: transport}, retry_delay=0)

    with respx.mock(base_url="https://jubilee.test/api") as mock:
        mock.post("/Token").mock(side_effect=[
            httpx.Response(200, json=token),
            httpx.Response(200, text="<html>Login</html>"),
            httpx.Response(200, json=token),
        ])
        mock.get("/Getcarddetails").mock(return_value=httpx.Response(200, json=CARD_OK))
        mock.get("/CheckVerification").mock(return_value=httpx.Response(200, json=VERIFY_OK))
        mock.post("/SendClaim").mock(side_effect=[httpx.Response(401), httpx.Response(200, json=CLAIM_OK)])

        with pytest.raises(ClaimEngineError):
            await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)
        [failed] = claim_rows(orchestrator)
        assert failed.status == ClaimStatus.pending

        record = await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    await transport.aclose()
    assert record.claim_id == failed.claim_id
    assert record.status == ClaimStatus.submitted


@pytest.mark.anyio
async def test_approved_preauthorization_without_number_blocks_claim(orchestrator, jubilee_transport, basket, jubilee_meta):
    jubilee_transport.scripts["check_verification"] = [VERIFY_NO_AUTH]
    jubilee_transport.scripts["send_preauthorization"] = [{"Status": "OK", "SubmissionID": "PRE-4"}]
    jubilee_transport.scripts["preauthorization_status"] = [{"Status": "OK", "Description": {"preathorizationStatus": "1"}}]

    await orchestrator.request_preauthorization("E1", "JUBILEE", basket, jubilee_meta)
    context = await orchestrator.poll_authorization("PRE-4")
    assert context.authorization_number is None

    with pytest.raises(ClaimEngineError) as exc:
        await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    assert exc.value.kind == ErrorKind.no_authorization
    assert "no authorization number" in exc.value.message
    assert len(jubilee_transport.calls_to("send_preauthorization")) == 1


@pytest.mark.anyio
async def test_refresh_jubilee_claim_status(orchestrator, jubilee_transport, basket, jubilee_meta):
    jubilee_transport.scripts["claim_status"] = [
        {"Status": "OK", "Description": {"ClaimStatus": "Under Review"}},
        {"Status": "OK", "Description": {"ClaimStatus": "Paid"}},
    ]
    submitted = await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    processing = await orchestrator.refresh_claim_status(submitted.claim_id)
    paid = await orchestrator.refresh_claim_status(submitted.claim_id)
    again = await orchestrator.refresh_claim_status(submitted.claim_id)

    assert processing.status == ClaimStatus.processing
    assert paid.status == ClaimStatus.paid
    assert again.status == ClaimStatus.paid
    assert jubilee_transport.calls_to("claim_status") == [{"submissionID": "SUB-900"}] * 2


@pytest.mark.anyio
async def test_refresh_ga_claim_status(orchestrator, smart_transport, basket, ga_meta):
    smart_transport.scripts["claim_status"] = [{"data": {"status": "REJECTED"}}]
    submitted = await orchestrator.submit_claim("E2", "GA", basket, ga_meta)

    record = await orchestrator.refresh_claim_status(submitted.claim_id)

    assert record.status == ClaimStatus.cancelled
    assert smart_transport.calls_to("claim_status") == [{"claimId": "GA-CLM-1"}]


@pytest.mark.anyio
async def test_refresh_keeps_status_when_answer_unrecognised(orchestrator, jubilee_transport, basket, jubilee_meta):
    jubilee_transport.scripts["claim_status"] = [{"Status": "OK", "Description": {"ClaimStatus": "42"}}]
    submitted = await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    record = await orchestrator.refresh_claim_status(submitted.claim_id)

    assert record.status == ClaimStatus.submitted


@pytest.mark.anyio
async def test_refresh_pending_claim_without_reference(orchestrator, jubilee_transport, basket, jubilee_meta):
    jubilee_transport.scripts["send_claim"] = [{"Status": "ERROR", "Description": "Invalid folio item"}]
    with pytest.raises(ClaimEngineError):
        await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)
    [failed] = claim_rows(orchestrator)

    with pytest.raises(ClaimEngineError) as exc:
        await orchestrator.refresh_claim_status(failed.claim_id)

    assert exc.value.kind == ErrorKind.unknown
    assert jubilee_transport.calls_to("claim_status") == []


@pytest.mark.anyio
async def test_refresh_transient_failure(orchestrator, jubilee_transport, basket, jubilee_meta):
    jubilee_transport.scripts["claim_status"] = [TransientProviderError("timeout")]
    submitted = await orchestrator.submit_claim("E1", "JUBILEE", basket, jubilee_meta)

    with pytest.raises(ClaimEngineError) as exc:
        await orchestrator.refresh_claim_status(submitted.claim_id)

    assert exc.value.kind == ErrorKind.transient
    assert claim_rows(orchestrator)[0].status == ClaimStatus.submitted


@pytest.mark.parametrize("response, status", [
    ({"Status": "OK", "Description": {"ClaimStatus": "Approved"}}, ClaimStatus.approved),
    ({"Status": "OK", "Description": "Claim declined by assessor"}, ClaimStatus.cancelled),
    ({"status": "UNPAID"}, None),
    ({"data": {"claim_status": "PAID"}}, ClaimStatus.paid),
    ({"raw": "Processing"}, ClaimStatus.processing),
    ({"Status": "OK"}, None),
])
def test_upstream_claim_status(response, status):
    assert upstream_claim_status(response) == status


@pytest.mark.anyio
@pytest.mark.parametrize("provider_id, member_fixture", [("JUBILEE", "jubilee_meta"), ("GA", "ga_meta")])
async def test_timeout_reaches_every_upstream_call(request, orchestrator, jubilee_transport, smart_transport, basket,
                                                   provider_id, member_fixture):
    meta = request.getfixturevalue(member_fixture)

    await orchestrator.submit_claim("E1", provider_id, basket, meta, timeout=7.5)

    transport = jubilee_transport if provider_id == "JUBILEE" else smart_transport
    assert transport.timeouts
    assert set(transport.timeouts) == {7.5}
