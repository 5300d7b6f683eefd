"""Tests for chartbridge.service.ClinicalDocumentService."""

import pytest

from chartbridge.ccda.templates import DocumentKind
from chartbridge.config import OrganizationSettings
from chartbridge.exceptions import NotFoundError
from chartbridge.models import CONFLICT, Patient, Provider, ReferralDetails
from chartbridge.service import ClinicalDocumentService

from conftest import FIXED_NOW, HL7, parse


class RecordingStore:
    """Delegates to a real store and records which fetchers ran."""

    def __init__(self, store, fail_on=None):
        self.store = store
        self.fail_on = fail_on
        self.calls = []

    def __getattr__(self, name):
        target = getattr(self.store, name)

        def call(*args):
            self.calls.append(name)
            if name == self.fail_on:
                raise RuntimeError(f"{name} unavailable")
            return target(*args)

        return call


@pytest.fixture
def service(loaded_db, id_factory):
    return ClinicalDocumentService(loaded_db, new_id=id_factory, clock=lambda: FIXED_NOW)


class TestGenerate:
    def test_continuity_document(self, service):
        root = parse(service.generate_continuity_document("P001"))
        assert root.find("h:code", HL7).get("code") == "34133-9"
        assert root.find("h:effectiveTime", HL7).get("value") == "20250115093000"
        sections = root.findall("h:component/h:structuredBody/h:component/h:section", HL7)
        assert len(sections) == 10

    def test_referral_note(self, service):
        referral = ReferralDetails(reason="Cardiology consult", referred_to=Provider(name="Ray Tso", npi="99"))
        root = parse(service.generate_referral_note("P001", referral))
        assert root.find("h:code", HL7).get("code") == "57133-1"
        assert root.find("h:informationRecipient/h:intendedRecipient/h:id", HL7).get("extension") == "99"

    def test_discharge_summary(self, service):
        root = parse(service.generate_discharge_summary("P001", "E1"))
        enc = root.find("h:componentOf/h:encompassingEncounter/h:id", HL7)
        assert enc.get("extension") == "E1"

    def test_transfer_summary(self, service):
        root = parse(service.generate_transfer_summary("P001", "E1"))
        assert root.find("h:code", HL7).get("code") == "18761-7"

    def test_generic_dispatch(self, service):
        xml = service.generate(DocumentKind.TRANSFER, "P001", encounter_id="E1")
        assert "Transfer Summary" in xml

    def test_settings_used(self, loaded_db):
        service = ClinicalDocumentService(loaded_db, settings=OrganizationSettings(name="Chinle Health"))
        root = parse(service.generate_continuity_document("P001"))
        org = root.find("h:custodian/h:assignedCustodian/h:representedCustodianOrganization/h:name", HL7)
        assert org.text == "Chinle Health"


class TestNotFound:
    def test_unknown_patient(self, service):
        with pytest.raises(NotFoundError):
            service.generate_continuity_document("nobody")

    def test_unknown_encounter(self, service):
        with pytest.raises(NotFoundError):
            service.generate_discharge_summary("P001", "E404")

    def test_encounter_of_another_patient(self, loaded_db, service):
        loaded_db.save_patient(Patient(id="P002", given_name="Other"))
        with pytest.raises(NotFoundError):
            service.generate_discharge_summary("P002", "E1")
        with pytest.raises(NotFoundError):
            service.generate_transfer_summary("P002", "E1")

    def test_missing_encounter_id(self, service):
        with pytest.raises(NotFoundError):
            service.generate(DocumentKind.DISCHARGE, "P001")


class TestFetching:
    def test_fetches_only_needed_categories(self, loaded_db):
        store = RecordingStore(loaded_db)
        ClinicalDocumentService(store).generate_referral_note("P001", ReferralDetails())
        assert store.calls == [
            "fetch_patient",
            "fetch_allergies",
            "fetch_medications",
            "fetch_problems",
            "fetch_results",
            "fetch_vitals",
            "fetch_immunizations",
        ]

    def test_encounter_fetched_before_compose(self, loaded_db):
        store = RecordingStore(loaded_db)
        ClinicalDocumentService(store).generate_discharge_summary("P001", "E1")
        assert store.calls[0] == "fetch_patient"
        assert store.calls[-1] == "fetch_encounter"

    def test_fetch_failure_propagates(self, loaded_db):
        store = RecordingStore(loaded_db, fail_on="fetch_results")
        with pytest.raises(RuntimeError, match="fetch_results unavailable"):
            ClinicalDocumentService(store).generate_continuity_document("P001")

    def test_id_failure_propagates(self, loaded_db):
        def broken():
            raise RuntimeError("no ids")

        with pytest.raises(RuntimeError, match="no ids"):
            ClinicalDocumentService(loaded_db, new_id=broken).generate_continuity_document("P001")


class TestParseAndReconcile:
    def test_parse_generated_document(self, service, sample_document):
        parsed = service.parse_document(service.generate_continuity_document("P001"))
        assert parsed.counts() == sample_document.counts()

    def test_reconcile_own_document_matches(self, service):
        parsed = service.parse_document(service.generate_continuity_document("P001"))
        result = service.reconcile("P001", parsed)
        assert result.counts() == {"new": 0, "matched": 6, "conflict": 0}
        assert result.reconciled_at == FIXED_NOW.isoformat()

    def test_reconcile_detects_status_change(self, service):
        parsed = service.parse_document(service.generate_continuity_document("P001"))
        parsed.problems[0].status = "resolved"
        result = service.reconcile("P001", parsed)
        assert [i.classification for i in result.conflict_items] == [CONFLICT]
