import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_claims.insurance_database import ClaimLedgerEntry
from clinic_claims.model import LIVE_CLAIM_STATUSES, ClaimRecord, ClaimStatus, RecordKind
from clinic_claims.services.errors import DuplicateClaimError, RecordNotFound

logger = logging.getLogger(__name__)


def new_claim_id() -> str:
    return str(uuid.uuid4())


class ClaimLedger:
    """
    Durable record of every claim and pre-authorization sent upstream.

    The partial unique index on claim_records is what stops two live claims
    for one encounter; reserve_submission relies on it under concurrency.
    """

    def __init__(self, db: Session):
        self.db = db

    def _to_record(self, entry: ClaimLedgerEntry) -> ClaimRecord:
        return ClaimRecord.model_validate(entry)

    def _entry(self, claim_id: str) -> ClaimLedgerEntry:
        entry = self.db.query(ClaimLedgerEntry).filter(ClaimLedgerEntry.claim_id == claim_id).first()
        if entry is None:
            raise RecordNotFound(f"No claim record {claim_id}")
        return entry

    def _commit(self, entry: ClaimLedgerEntry):
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            live = self.find_live_claim(entry.encounter_id, entry.provider_id)
            if live is None:
                raise
            raise DuplicateClaimError(live.claim_id, live.created_at) from None
        self.db.refresh(entry)

    def get(self, claim_id: str) -> ClaimRecord:
        return self._to_record(self._entry(claim_id))

    def insert(self, **fields: Any) -> ClaimRecord:
        fields.setdefault("claim_id", new_claim_id())
        fields.setdefault("kind", RecordKind.claim.value)
        fields.setdefault("status", ClaimStatus.pending.value)
        entry = ClaimLedgerEntry(**{k: _plain(v) for k, v in fields.items()})
        self.db.add(entry)
        self._commit(entry)
        return self._to_record(entry)

    def update_status(self, claim_id: str, status: ClaimStatus, **fields: Any) -> ClaimRecord:
        entry = self._entry(claim_id)
        entry.status = _plain(status)
        for key, value in fields.items():
            setattr(entry, key, _plain(value))
        entry.updated_at = datetime.utcnow()
        self._commit(entry)
        return self._to_record(entry)

    def find_live_claim(self, encounter_id: str, provider_id: str) -> Optional[ClaimRecord]:
        entry = (
            self.db.query(ClaimLedgerEntry)
            .filter(ClaimLedgerEntry.encounter_id == encounter_id)
            .filter(ClaimLedgerEntry.provider_id == provider_id)
            .filter(ClaimLedgerEntry.kind == RecordKind.claim.value)
            .filter(ClaimLedgerEntry.status.in_(LIVE_CLAIM_STATUSES))
            .first()
        )
        return self._to_record(entry) if entry else None

    def reserve_submission(self, encounter_id: str, provider_id: str, **fields: Any) -> ClaimRecord:
        """
        Claims the (encounter, provider) slot by writing a `processing` row
        before anything is sent upstream. A previously failed `pending` claim
        for the same encounter is reused instead of adding a second row.
        Raises DuplicateClaimError when another submission already holds the slot.
        """
        previous = (
            self.db.query(ClaimLedgerEntry)
            .filter(ClaimLedgerEntry.encounter_id == encounter_id)
            .filter(ClaimLedgerEntry.provider_id == provider_id)
            .filter(ClaimLedgerEntry.kind == RecordKind.claim.value)
            .filter(ClaimLedgerEntry.status == ClaimStatus.pending.value)
            .order_by(ClaimLedgerEntry.created_at.desc())
            .first()
        )
        if previous is not None:
            values = {k: _plain(v) for k, v in fields.items()}
            values.update(status=ClaimStatus.processing.value, failure_reason=None, updated_at=datetime.utcnow())
            try:
                claimed = (
                    self.db.query(ClaimLedgerEntry)
                    .filter(ClaimLedgerEntry.id == previous.id)
                    .filter(ClaimLedgerEntry.status == ClaimStatus.pending.value)
                    .update(values, synchronize_session="fetch")
                )
            except IntegrityError:
                claimed = 0
            if claimed:
                self._commit(previous)
                logger.info("Retrying failed claim %s for encounter %s", previous.claim_id, encounter_id)
                return self._to_record(previous)
            self.db.rollback()
            live = self.find_live_claim(encounter_id, provider_id)
            if live is not None:
                raise DuplicateClaimError(live.claim_id, live.created_at)

        return self.insert(
            encounter_id=encounter_id,
            provider_id=provider_id,
            kind=RecordKind.claim.value,
            status=ClaimStatus.processing.value,
            **fields,
        )

    def list_by_patient(self, patient_id: str) -> List[ClaimRecord]:
        entries = (
            self.db.query(ClaimLedgerEntry)
            .filter(ClaimLedgerEntry.patient_id == patient_id)
            .order_by(ClaimLedgerEntry.created_at.desc(), ClaimLedgerEntry.id.desc())
            .all()
        )
        return [self._to_record(e) for e in entries]

    def find_preauthorizations(
        self,
        encounter_id: str,
        provider_id: str,
        statuses: Iterable[str] = (ClaimStatus.pending.value, ClaimStatus.approved.value),
    ) -> List[ClaimRecord]:
        entries = (
            self.db.query(ClaimLedgerEntry)
            .filter(ClaimLedgerEntry.encounter_id == encounter_id)
            .filter(ClaimLedgerEntry.provider_id == provider_id)
            .filter(ClaimLedgerEntry.kind == RecordKind.preauthorization.value)
            .filter(ClaimLedgerEntry.status.in_([_plain(s) for s in statuses]))
            .order_by(ClaimLedgerEntry.created_at.desc(), ClaimLedgerEntry.id.desc())
            .all()
        )
        return [self._to_record(e) for e in entries]

    def find_by_submission_id(self, submission_id: str) -> Optional[ClaimRecord]:
        entry = (
            self.db.query(ClaimLedgerEntry)
            .filter(ClaimLedgerEntry.submission_id == submission_id)
            .order_by(ClaimLedgerEntry.created_at.desc())
            .first()
        )
        return self._to_record(entry) if entry else None


def _plain(value: Any) -> Any:
    """Enum members are stored by value."""
    return getattr(value, "value", value)


def dump_line_items(items: Iterable[Any]) -> List[Dict[str, Any]]:
    return [item.model_dump(mode="json") if hasattr(item, "model_dump") else dict(item) for item in items]
