"""ORM models (import side effects register tables on Base.metadata)."""

from app.models.canonical_record import CanonicalRecord
from app.models.raw_record import RawRecord
from app.models.reference_record import REFERENCE_KINDS, ReferenceRecord
from app.models.resource_state import ResourceState
from app.models.run_outcome import RunOutcome, RunOutcomeImmutabilityError

__all__ = [
    "CanonicalRecord",
    "RawRecord",
    "REFERENCE_KINDS",
    "ReferenceRecord",
    "ResourceState",
    "RunOutcome",
    "RunOutcomeImmutabilityError",
]
