"""C-CDA R2.1 template identifiers, section codes, and document layouts.

All identifiers here are fixed by the HL7 implementation guide and must be
emitted byte-for-byte; third-party consumers locate sections and entries by
them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from chartbridge.exceptions import ValidationError

# Code systems
LOINC = "2.16.840.1.113883.6.1"
SNOMED = "2.16.840.1.113883.6.96"
RXNORM = "2.16.840.1.113883.6.88"
CVX = "2.16.840.1.113883.12.292"
CPT = "2.16.840.1.113883.6.12"
NCI_ROUTE = "2.16.840.1.113883.3.26.1.1"
OBSERVATION_INTERPRETATION = "2.16.840.1.113883.5.83"
ACT_CODE = "2.16.840.1.113883.5.6"
ACT_CODE_ASSERTION = "2.16.840.1.113883.5.4"
ADMINISTRATIVE_GENDER = "2.16.840.1.113883.5.1"
CONFIDENTIALITY = "2.16.840.1.113883.5.25"
RACE_ETHNICITY = "2.16.840.1.113883.6.238"
NPI = "2.16.840.1.113883.4.6"
MRN_ROOT = "2.16.840.1.113883.4.1"

CODE_SYSTEM_NAMES = {
    LOINC: "LOINC",
    SNOMED: "SNOMED CT",
    RXNORM: "RxNorm",
    CVX: "CVX",
    CPT: "CPT",
    NCI_ROUTE: "NCI Thesaurus",
    OBSERVATION_INTERPRETATION: "Observation Interpretation",
}

# Header
CDA_TYPE_ID = ("2.16.840.1.113883.1.3", "POCD_HD000040")
US_REALM_HEADER = "2.16.840.1.113883.10.20.22.1.1"
HEADER_EXTENSION = "2015-08-01"
PATIENT_ID_ROOT = "2.16.840.1.113883.19.5"
ENCOUNTER_ID_ROOT = "2.16.840.1.113883.19"


@dataclass(frozen=True)
class TemplateId:
    root: str
    extension: str | None = None


class DocumentKind(Enum):
    """The four document types, each a (template, LOINC code, display, title) triad."""

    CCD = (
        "2.16.840.1.113883.10.20.22.1.2",
        "34133-9",
        "Summarization of Episode Note",
        "Continuity of Care Document",
    )
    REFERRAL = (
        "2.16.840.1.113883.10.20.22.1.14",
        "57133-1",
        "Referral note",
        "Referral Note",
    )
    DISCHARGE = (
        "2.16.840.1.113883.10.20.22.1.8",
        "18842-5",
        "Discharge summary",
        "Discharge Summary",
    )
    TRANSFER = (
        "2.16.840.1.113883.10.20.22.1.13",
        "18761-7",
        "Provider-unspecified transfer summary",
        "Transfer Summary",
    )

    def __init__(self, template_id: str, loinc: str, display: str, title: str):
        self.template_id = template_id
        self.loinc = loinc
        self.display = display
        self.title = title

    @property
    def slug(self) -> str:
        return self.name.lower()

    @property
    def requires_encounter(self) -> bool:
        return self in (DocumentKind.DISCHARGE, DocumentKind.TRANSFER)

    @classmethod
    def from_slug(cls, slug: str) -> DocumentKind:
        try:
            return cls[slug.upper()]
        except KeyError:
            raise ValidationError(f"Unknown document kind: {slug}") from None


class Category(Enum):
    """Clinical categories. Values are the matching ParsedDocument list names."""

    ALLERGIES = "allergies"
    MEDICATIONS = "medications"
    PROBLEMS = "problems"
    PROCEDURES = "procedures"
    RESULTS = "results"
    VITALS = "vitals"
    IMMUNIZATIONS = "immunizations"
    PLAN_OF_CARE = "care_plans"
    SOCIAL_HISTORY = "social_history"
    ENCOUNTERS = "encounters"


@dataclass(frozen=True)
class SectionTemplate:
    """Fixed identity of one document section.

    ``root`` is the "entries required" template emitted on generation;
    ``alt_roots`` are other roots accepted when reading (the "entries
    optional" variant most senders also use).
    """

    root: str
    extension: str | None
    loinc: str
    display: str
    title: str
    empty_text: str = ""
    headers: tuple[str, ...] = ()
    alt_roots: tuple[str, ...] = field(default=())

    @property
    def roots(self) -> tuple[str, ...]:
        return (self.root, *self.alt_roots)


_S = "2.16.840.1.113883.10.20.22.2."

SECTIONS: dict[Category, SectionTemplate] = {
    Category.ALLERGIES: SectionTemplate(
        _S + "6.1", "2015-08-01", "48765-2",
        "Allergies and adverse reactions Document",
        "Allergies and Adverse Reactions",
        "No known allergies",
        ("Substance", "Status", "Criticality", "Onset Date"),
        alt_roots=(_S + "6",),
    ),
    Category.MEDICATIONS: SectionTemplate(
        _S + "1.1", "2014-06-09", "10160-0",
        "History of Medication use Narrative",
        "Medications",
        "No current medications",
        ("Medication", "Dosage", "Route", "Frequency", "Status", "Start Date"),
        alt_roots=(_S + "1",),
    ),
    Category.PROBLEMS: SectionTemplate(
        _S + "5.1", "2015-08-01", "11450-4",
        "Problem list - Reported",
        "Problem List",
        "No known problems",
        ("Problem", "Code", "Status", "Onset Date"),
        alt_roots=(_S + "5",),
    ),
    Category.PROCEDURES: SectionTemplate(
        _S + "7.1", "2014-06-09", "47519-4",
        "History of Procedures Document",
        "Procedures",
        "No procedures recorded",
        ("Procedure", "Code", "Status", "Date"),
        alt_roots=(_S + "7",),
    ),
    Category.RESULTS: SectionTemplate(
        _S + "3.1", "2015-08-01", "30954-2",
        "Relevant diagnostic tests/laboratory data Narrative",
        "Results",
        "No results available",
        ("Test", "Value", "Interpretation", "Reference Range", "Date"),
        alt_roots=(_S + "3",),
    ),
    Category.VITALS: SectionTemplate(
        _S + "4.1", "2015-08-01", "8716-3",
        "Vital signs",
        "Vital Signs",
        "No vital signs recorded",
        ("Vital Sign", "Value", "Date"),
        alt_roots=(_S + "4",),
    ),
    Category.IMMUNIZATIONS: SectionTemplate(
        _S + "2.1", "2015-08-01", "11369-6",
        "History of Immunization Narrative",
        "Immunizations",
        "No immunizations recorded",
        ("Vaccine", "Date", "Status", "Lot Number"),
        alt_roots=(_S + "2",),
    ),
    Category.PLAN_OF_CARE: SectionTemplate(
        _S + "10", "2014-06-09", "18776-5",
        "Plan of care note",
        "Plan of Care",
        "No active care plans",
        ("Plan", "Status", "Description"),
    ),
    Category.SOCIAL_HISTORY: SectionTemplate(
        _S + "17", "2015-08-01", "29762-2",
        "Social history Narrative",
        "Social History",
        "No social history recorded",
        ("Social History Element", "Value", "Date"),
    ),
    Category.ENCOUNTERS: SectionTemplate(
        _S + "22.1", "2015-08-01", "46240-8",
        "History of encounters",
        "Encounters",
        "No encounters recorded",
        ("Encounter Type", "Start", "End", "Status"),
        alt_roots=(_S + "22",),
    ),
}

# Narrative-only sections (no structured entries)
REASON_FOR_REFERRAL = SectionTemplate(
    "1.3.6.1.4.1.19376.1.5.3.1.3.1", None, "42349-1",
    "Reason for referral", "Reason for Referral",
)
DISCHARGE_DIAGNOSIS = SectionTemplate(
    "1.3.6.1.4.1.19376.1.5.3.1.3.33", None, "11535-2",
    "Hospital discharge Dx", "Discharge Diagnosis",
)
HOSPITAL_COURSE = SectionTemplate(
    "1.3.6.1.4.1.19376.1.5.3.1.3.31", None, "8648-8",
    "Hospital course", "Hospital Course",
)


# Entry templates
_E = "2.16.840.1.113883.10.20.22.4."

ALLERGY_CONCERN_ACT = TemplateId(_E + "30", "2015-08-01")
ALLERGY_OBSERVATION = TemplateId(_E + "7", "2014-06-09")
REACTION_OBSERVATION = TemplateId(_E + "9", "2014-06-09")
CRITICALITY_OBSERVATION = TemplateId(_E + "145")
MEDICATION_ACTIVITY = TemplateId(_E + "16", "2014-06-09")
MEDICATION_INFORMATION = TemplateId(_E + "23", "2014-06-09")
PROBLEM_CONCERN_ACT = TemplateId(_E + "3", "2015-08-01")
PROBLEM_OBSERVATION = TemplateId(_E + "4", "2015-08-01")
PROCEDURE_ACTIVITY = TemplateId(_E + "14", "2014-06-09")
RESULT_ORGANIZER = TemplateId(_E + "1", "2015-08-01")
RESULT_OBSERVATION = TemplateId(_E + "2", "2015-08-01")
VITAL_SIGNS_ORGANIZER = TemplateId(_E + "26", "2015-08-01")
VITAL_SIGN_OBSERVATION = TemplateId(_E + "27", "2014-06-09")
IMMUNIZATION_ACTIVITY = TemplateId(_E + "52", "2015-08-01")
IMMUNIZATION_MEDICATION_INFORMATION = TemplateId(_E + "54", "2014-06-09")
PLAN_OF_CARE_ACTIVITY = TemplateId(_E + "39")
ENCOUNTER_ACTIVITY = TemplateId(_E + "49", "2015-08-01")
SMOKING_STATUS = TemplateId(_E + "78", "2014-06-09")

PROBLEM_OBSERVATION_CODE = ("55607006", "Problem")
VITAL_SIGNS_CODE = ("46680005", "Vital signs")
SMOKING_STATUS_CODE = ("72166-2", "Tobacco smoking status")


# Section order per document kind. Strings name narrative-only sections.
NARRATIVE_REASON = "reason_for_referral"
NARRATIVE_DIAGNOSIS = "discharge_diagnosis"
NARRATIVE_COURSE = "hospital_course"

DOCUMENT_SECTIONS: dict[DocumentKind, tuple[Category | str, ...]] = {
    DocumentKind.CCD: tuple(Category),
    DocumentKind.REFERRAL: (
        NARRATIVE_REASON,
        Category.ALLERGIES,
        Category.MEDICATIONS,
        Category.PROBLEMS,
        Category.RESULTS,
        Category.VITALS,
        Category.IMMUNIZATIONS,
    ),
    DocumentKind.DISCHARGE: (
        Category.ALLERGIES,
        Category.MEDICATIONS,
        Category.PROBLEMS,
        Category.PROCEDURES,
        Category.RESULTS,
        Category.VITALS,
        NARRATIVE_DIAGNOSIS,
        NARRATIVE_COURSE,
    ),
    DocumentKind.TRANSFER: (
        Category.ALLERGIES,
        Category.MEDICATIONS,
        Category.PROBLEMS,
        Category.PROCEDURES,
        Category.RESULTS,
        Category.VITALS,
        Category.IMMUNIZATIONS,
        Category.PLAN_OF_CARE,
    ),
}


def categories_for(kind: DocumentKind) -> list[Category]:
    """Clinical categories whose records a document of ``kind`` renders."""
    return [s for s in DOCUMENT_SECTIONS[kind] if isinstance(s, Category)]
