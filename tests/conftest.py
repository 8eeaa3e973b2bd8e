# conftest.py
import copy
import os

os.environ.setdefault("MY_API_KEYS", "test-key")
os.environ["CLAIM_RETRY_DELAY"] = "0"
os.environ["CLAIMS_DATABASE_URL"] = "sqlite:///:memory:"

import anyio
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clinic_claims.insurance_database import Base
from clinic_claims.model import EncounterMeta, PatientDetails, ProviderId, TreatmentItem
from clinic_claims.services.orchestrator import ClaimOrchestrator
from clinic_claims.services.transport import ProviderTransport


class FakeTransport(ProviderTransport):
    """
    Scripted transport. Each operation has a queue of results; the last one
    repeats. A result may be a dict, an exception to raise, or a callable
    taking the payload.
    """

    def __init__(self, provider_id="JUBILEE", **scripts):
        self.provider_id = provider_id
        self.scripts = {op: list(results) for op, results in scripts.items()}
        self.calls = []
        self.timeouts = []
        self.authentications = 0

    def calls_to(self, operation):
        return [payload for op, payload in self.calls if op == operation]

    async def call(self, operation, payload=None, timeout=None):
        self.calls.append((operation, copy.deepcopy(payload)))
        self.timeouts.append(timeout)
        await anyio.sleep(0)
        queue = self.scripts.get(operation)
        if not queue:
            raise AssertionError(f"unexpected call to {operation}")
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(result, Exception):
            raise result
        if callable(result):
            result = result(payload)
        return copy.deepcopy(result)

    async def authenticate(self):
        self.authentications += 1


JUBILEE_MEMBER = "12345678"
GA_MEMBER = "GA-001234"

CARD_OK = {
    "Status": "OK",
    "Description": {
        "MemberName": "Asha Mushi",
        "MemberNo": JUBILEE_MEMBER,
        "Company": "Acme Ltd",
        "Dob": "1990-04-10",
        "ActiveStatus": "Active",
        "Gender": "F",
        "Phone": "0712000000",
        "ProviderID": "P1",
        "LastAuthorization": "",
    },
}

VERIFY_OK = {
    "Status": "OK",
    "Description": {
        "DailyLimit": 500000,
        "CoverLimit": 1000000,
        "Benefits": [{"BenefitCode": "7960", "BenefitName": "Dental", "BenefitBalance": "800,000"}],
    },
    "AuthorizationNo": "556677---VERIFIED",
}

VERIFY_NO_AUTH = {
    "Status": "OK",
    "Description": {"Benefits": [{"BenefitCode": "7960", "BenefitName": "Dental", "BenefitBalance": "800000"}]},
}

CLAIM_OK = {"Status": "OK", "Description": "Claim received", "SubmissionID": "SUB-900"}


@pytest.fixture(scope="module")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def jubilee_transport():
    return FakeTransport(
        "JUBILEE",
        card_details=[CARD_OK],
        check_verification=[VERIFY_OK],
        send_claim=[CLAIM_OK],
    )


@pytest.fixture
def smart_transport():
    return FakeTransport(
        "GA",
        visit=[lambda payload: {"data": {"sessionId": "S-100"}} if payload["sessionStatus"] == "ACTIVE" else {"content": []}],
        member=[{"patient_name": "John Doe", "medical_aid_plan": "GA Gold"}],
        benefits=[{"co_pay_amount": 20, "amount": 500000, "used": 100000}],
        final_claim=[{"claim_id": "GA-CLM-1", "status": "SUBMITTED"}],
    )


@pytest.fixture
def orchestrator(db_session, jubilee_transport, smart_transport):
    return ClaimOrchestrator(
        db_session,
        transports={ProviderId.jubilee: jubilee_transport, ProviderId.ga: smart_transport},
        retry_delay=0,
    )


@pytest.fixture
def basket():
    return [
        TreatmentItem(name="Consultation", unit_cost=20000, quantity=1),
        TreatmentItem(name="Composite filling", unit_cost=15000, quantity=2),
    ]


@pytest.fixture
def jubilee_meta():
    return EncounterMeta(
        patient_id="PAT-1",
        member_id=JUBILEE_MEMBER,
        patient=PatientDetails(name="Asha Mushi", gender="F", phone="0712000000", patient_number="SD-25-00247"),
        diagnosis_codes=["K02.9"],
        practitioner_no="DR-77",
    )


@pytest.fixture
def ga_meta():
    return EncounterMeta(
        patient_id="PAT-2",
        member_id=GA_MEMBER,
        patient=PatientDetails(name="John Doe"),
        doctor_name="Dr. Kimaro",
    )
