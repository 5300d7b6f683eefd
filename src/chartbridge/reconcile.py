"""Reconcile an extracted document against the records on file.

For allergies, medications, and problems, every incoming record is matched to
the first existing record with the same (non-empty) code and classified:

- new:      no existing record has that code
- conflict: a match exists but its status differs
- matched:  a match exists with the same status

Matching is exact code equality; there is no fuzzy or cross-system matching.
Nothing is written back to the store.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Union

from chartbridge.models import (
    CONFLICT,
    MATCHED,
    NEW,
    Allergy,
    Medication,
    ParsedDocument,
    Problem,
    ReconciliationItem,
    ReconciliationResult,
)

if TYPE_CHECKING:
    from chartbridge.store import RecordStore

logger = logging.getLogger(__name__)

Reconcilable = Union[Allergy, Medication, Problem]


def find_match(incoming: Reconcilable, existing: Sequence[Reconcilable]) -> Reconcilable | None:
    """Return the first existing record whose non-empty code equals the incoming code."""
    for record in existing:
        if record.code and record.code == incoming.code:
            return record
    return None


def classify(incoming_status: str, existing_status: str | None) -> tuple[str, str]:
    """Classify one incoming record. Returns (classification, conflict_details).

    ``existing_status`` is None when no existing record matched.
    """
    if existing_status is None:
        return NEW, ""
    if existing_status != incoming_status:
        return (
            CONFLICT,
            f"Status mismatch: existing='{existing_status}', incoming='{incoming_status}'",
        )
    return MATCHED, ""


def reconcile_records(
    category: str, incoming: Sequence[Reconcilable], existing: Sequence[Reconcilable]
) -> list[ReconciliationItem]:
    items = []
    for record in incoming:
        match = find_match(record, existing)
        classification, details = classify(record.status, match.status if match else None)
        items.append(
            ReconciliationItem(
                category=category,
                incoming=record,
                classification=classification,
                existing=match,
                conflict_details=details,
            )
        )
    return items


def reconcile(
    patient_id: str,
    parsed: ParsedDocument,
    store: RecordStore,
    now: datetime | None = None,
) -> ReconciliationResult:
    """Classify the allergies, medications, and problems of ``parsed``.

    Raises NotFoundError (from the store) when the patient does not exist.
    """
    store.fetch_patient(patient_id)
    result = ReconciliationResult(
        patient_id=patient_id,
        reconciled_at=(now or datetime.now(timezone.utc)).isoformat(),
    )

    for category, incoming, existing in (
        ("allergy", parsed.allergies, store.fetch_allergies(patient_id)),
        ("medication", parsed.medications, store.fetch_medications(patient_id)),
        ("problem", parsed.problems, store.fetch_problems(patient_id)),
    ):
        for item in reconcile_records(category, incoming, existing):
            if item.classification == NEW:
                result.new_items.append(item)
            elif item.classification == CONFLICT:
                result.conflict_items.append(item)
            else:
                result.matched_items.append(item)

    logger.info("Reconciled patient %s: %s", patient_id, result.counts())
    return result
