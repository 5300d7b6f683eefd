"""Interface to the system of record that supplies clinical data."""

from __future__ import annotations

from typing import Protocol

from chartbridge.models import (
    Allergy,
    CarePlan,
    Encounter,
    Immunization,
    Medication,
    Patient,
    Problem,
    Procedure,
    Result,
    SmokingStatus,
    Vital,
)


class RecordStore(Protocol):
    """Read access to stored patient records.

    Every list is returned most-recent-first. ``fetch_patient`` and
    ``fetch_encounter`` raise NotFoundError for unknown identifiers; an
    encounter only counts as found when it belongs to the given patient.
    """

    def fetch_patient(self, patient_id: str) -> Patient: ...

    def fetch_allergies(self, patient_id: str) -> list[Allergy]: ...

    def fetch_medications(self, patient_id: str) -> list[Medication]: ...

    def fetch_problems(self, patient_id: str) -> list[Problem]: ...

    def fetch_procedures(self, patient_id: str) -> list[Procedure]: ...

    def fetch_results(self, patient_id: str) -> list[Result]: ...

    def fetch_vitals(self, patient_id: str) -> list[Vital]: ...

    def fetch_immunizations(self, patient_id: str) -> list[Immunization]: ...

    def fetch_care_plans(self, patient_id: str) -> list[CarePlan]: ...

    def fetch_social_history(self, patient_id: str) -> list[SmokingStatus]: ...

    def fetch_encounters(self, patient_id: str) -> list[Encounter]: ...

    def fetch_encounter(self, patient_id: str, encounter_id: str) -> Encounter: ...
