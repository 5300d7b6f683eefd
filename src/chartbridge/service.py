"""Document service: the operations exposed to callers.

Each generate_* call fetches everything it needs from the record store
(patient, every category, and the encounter where required) before any
document element is built, so a NotFoundError or a failing fetch never
produces partial output.
"""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import uuid4

from chartbridge.ccda.composer import compose
from chartbridge.ccda.extract import extract
from chartbridge.ccda.sections import IdFactory
from chartbridge.ccda.templates import Category, DocumentKind, categories_for
from chartbridge.config import OrganizationSettings
from chartbridge.models import Encounter, ParsedDocument, ReconciliationResult, ReferralDetails
from chartbridge.reconcile import reconcile as reconcile_document
from chartbridge.store import RecordStore

logger = logging.getLogger(__name__)

_FETCHERS = {
    Category.ALLERGIES: "fetch_allergies",
    Category.MEDICATIONS: "fetch_medications",
    Category.PROBLEMS: "fetch_problems",
    Category.PROCEDURES: "fetch_procedures",
    Category.RESULTS: "fetch_results",
    Category.VITALS: "fetch_vitals",
    Category.IMMUNIZATIONS: "fetch_immunizations",
    Category.PLAN_OF_CARE: "fetch_care_plans",
    Category.SOCIAL_HISTORY: "fetch_social_history",
    Category.ENCOUNTERS: "fetch_encounters",
}


class ClinicalDocumentService:
    """Generate, parse and reconcile C-CDA documents against a record store."""

    def __init__(
        self,
        store: RecordStore,
        settings: OrganizationSettings | None = None,
        new_id: IdFactory | None = None,
        clock=None,
    ):
        self.store = store
        self.settings = settings or OrganizationSettings()
        self.new_id = new_id or uuid4
        self.clock = clock

    def _gather(self, kind: DocumentKind, patient_id: str) -> ParsedDocument:
        document = ParsedDocument(patient=self.store.fetch_patient(patient_id))
        for category in categories_for(kind):
            records = getattr(self.store, _FETCHERS[category])(patient_id)
            setattr(document, category.value, list(records))
        return document

    def _now(self) -> datetime | None:
        return self.clock() if self.clock else None

    def _generate(
        self,
        kind: DocumentKind,
        patient_id: str,
        *,
        referral: ReferralDetails | None = None,
        encounter_id: str | None = None,
    ) -> str:
        document = self._gather(kind, patient_id)
        encounter: Encounter | None = None
        if kind.requires_encounter:
            encounter = self.store.fetch_encounter(patient_id, encounter_id or "")
        return compose(
            kind,
            document,
            referral=referral,
            encounter=encounter,
            settings=self.settings,
            new_id=self.new_id,
            now=self._now(),
        )

    def generate_continuity_document(self, patient_id: str) -> str:
        return self._generate(DocumentKind.CCD, patient_id)

    def generate_referral_note(self, patient_id: str, referral: ReferralDetails) -> str:
        return self._generate(DocumentKind.REFERRAL, patient_id, referral=referral)

    def generate_discharge_summary(self, patient_id: str, encounter_id: str) -> str:
        return self._generate(DocumentKind.DISCHARGE, patient_id, encounter_id=encounter_id)

    def generate_transfer_summary(self, patient_id: str, encounter_id: str) -> str:
        return self._generate(DocumentKind.TRANSFER, patient_id, encounter_id=encounter_id)

    def generate(
        self,
        kind: DocumentKind,
        patient_id: str,
        *,
        referral: ReferralDetails | None = None,
        encounter_id: str | None = None,
    ) -> str:
        """Dispatch on document kind (used by the CLI and MCP front ends)."""
        return self._generate(kind, patient_id, referral=referral, encounter_id=encounter_id)

    def parse_document(self, document: str | bytes) -> ParsedDocument:
        return extract(document)

    def reconcile(self, patient_id: str, parsed: ParsedDocument) -> ReconciliationResult:
        return reconcile_document(patient_id, parsed, self.store, now=self._now())
