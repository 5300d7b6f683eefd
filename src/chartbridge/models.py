"""Data model for clinical documents.

The same ParsedDocument shape is the input to document generation and the
output of document extraction. Each category dataclass maps 1:1 to a SQLite
table in db.py. Dates are ISO 8601 strings: YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Union


@dataclass
class Address:
    street: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""


@dataclass
class Identifier:
    system: str = ""  # OID of the assigning authority
    value: str = ""


@dataclass
class Patient:
    """Patient demographics. Exactly one per document."""

    id: str = ""
    mrn: str = ""
    given_name: str = ""
    family_name: str = ""
    gender: str = ""  # male, female, unknown
    birth_date: str = ""  # ISO YYYY-MM-DD
    race_code: str = ""
    race: str = ""
    ethnicity_code: str = ""
    ethnicity: str = ""
    language: str = ""  # BCP 47, e.g. en-US
    address: Address | None = None
    phone: str = ""
    identifiers: list[Identifier] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.given_name, self.family_name) if p)


@dataclass
class Reaction:
    code: str = ""
    display_name: str = ""


@dataclass
class Allergy:
    """An allergy or intolerance to a substance."""

    id: str = ""
    code: str = ""
    code_system: str = ""
    display_name: str = ""
    status: str = ""  # active, inactive
    criticality: str = ""  # low, high, unable-to-assess
    onset_date: str = ""
    # Decoded reactions, or the stored JSON text they came from
    reactions: Union[list[Reaction], str] = field(default_factory=list)


@dataclass
class Medication:
    id: str = ""
    code: str = ""  # RxNorm
    code_system: str = ""
    display_name: str = ""
    status: str = ""  # active, completed, stopped, on-hold, cancelled, entered-in-error
    dosage: str = ""  # free-text sig
    route_code: str = ""
    route: str = ""
    frequency: str = ""
    start_date: str = ""
    end_date: str = ""


@dataclass
class Problem:
    id: str = ""
    code: str = ""  # SNOMED CT / ICD-10
    code_system: str = ""
    display_name: str = ""
    status: str = ""  # active, resolved
    onset_date: str = ""
    resolved_date: str = ""


@dataclass
class Procedure:
    id: str = ""
    code: str = ""
    code_system: str = ""
    display_name: str = ""
    status: str = ""  # completed, active
    date: str = ""


@dataclass
class Result:
    """A single laboratory result observation."""

    id: str = ""
    code: str = ""  # LOINC
    code_system: str = ""
    display_name: str = ""
    value: str = ""  # Original text (handles "<0.5", "positive", etc.)
    value_numeric: float | None = None
    unit: str = ""
    date: str = ""
    interpretation_code: str = ""  # H, L, N, A, etc.
    interpretation: str = ""
    reference_range: str = ""


@dataclass
class Vital:
    id: str = ""
    code: str = ""  # LOINC
    code_system: str = ""
    display_name: str = ""
    value: float | None = None
    unit: str = ""
    date: str = ""


@dataclass
class Immunization:
    id: str = ""
    code: str = ""  # CVX
    code_system: str = ""
    display_name: str = ""
    date: str = ""
    status: str = ""  # completed, not-done
    lot_number: str = ""


@dataclass
class Encounter:
    id: str = ""
    code: str = ""  # CPT
    code_system: str = ""
    display_name: str = ""
    status: str = ""  # planned, in-progress, finished, ...
    class_code: str = ""  # AMB, IMP, EMER, ...
    start_date: str = ""
    end_date: str = ""
    performer: str = ""


@dataclass
class CarePlanActivity:
    description: str = ""
    status: str = ""


@dataclass
class CarePlan:
    id: str = ""
    title: str = ""
    description: str = ""
    status: str = ""  # active, completed
    # Decoded activities, or the stored JSON text they came from
    activities: Union[list[CarePlanActivity], str] = field(default_factory=list)


@dataclass
class SmokingStatus:
    """Tobacco smoking status observation (LOINC 72166-2)."""

    id: str = ""
    code: str = ""  # SNOMED CT
    code_system: str = ""
    display_name: str = ""
    date: str = ""


@dataclass
class ParsedDocument:
    """One patient plus one list per clinical category.

    Built fresh for every generation or parse call and never mutated
    afterwards.
    """

    patient: Patient = field(default_factory=Patient)
    allergies: list[Allergy] = field(default_factory=list)
    medications: list[Medication] = field(default_factory=list)
    problems: list[Problem] = field(default_factory=list)
    procedures: list[Procedure] = field(default_factory=list)
    results: list[Result] = field(default_factory=list)
    vitals: list[Vital] = field(default_factory=list)
    immunizations: list[Immunization] = field(default_factory=list)
    care_plans: list[CarePlan] = field(default_factory=list)
    social_history: list[SmokingStatus] = field(default_factory=list)
    encounters: list[Encounter] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        """Return record counts per category list."""
        return {
            "allergies": len(self.allergies),
            "medications": len(self.medications),
            "problems": len(self.problems),
            "procedures": len(self.procedures),
            "results": len(self.results),
            "vitals": len(self.vitals),
            "immunizations": len(self.immunizations),
            "care_plans": len(self.care_plans),
            "social_history": len(self.social_history),
            "encounters": len(self.encounters),
        }


@dataclass
class Provider:
    name: str
    npi: str = ""
    specialty: str = ""


@dataclass
class ReferralDetails:
    """Caller-supplied free text for a referral note."""

    reason: str = ""
    urgency: str = ""  # routine, urgent, stat
    clinical_history: str = ""
    requested_services: str = ""
    referring_provider: Provider | None = None
    referred_to: Provider | None = None


# Reconciliation

NEW = "new"
MATCHED = "matched"
CONFLICT = "conflict"


@dataclass
class ReconciliationItem:
    category: str  # allergy, medication, problem
    incoming: Union[Allergy, Medication, Problem]
    classification: str  # new, matched, conflict
    existing: Union[Allergy, Medication, Problem, None] = None
    conflict_details: str = ""


@dataclass
class ReconciliationResult:
    patient_id: str
    reconciled_at: str  # ISO timestamp
    new_items: list[ReconciliationItem] = field(default_factory=list)
    matched_items: list[ReconciliationItem] = field(default_factory=list)
    conflict_items: list[ReconciliationItem] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            NEW: len(self.new_items),
            MATCHED: len(self.matched_items),
            CONFLICT: len(self.conflict_items),
        }


# Plain-dict conversion (JSON input files, CLI/MCP output)

RECORD_TYPES: dict[str, type] = {
    "allergies": Allergy,
    "medications": Medication,
    "problems": Problem,
    "procedures": Procedure,
    "results": Result,
    "vitals": Vital,
    "immunizations": Immunization,
    "care_plans": CarePlan,
    "social_history": SmokingStatus,
    "encounters": Encounter,
}


def _build(cls: type, data: dict):
    """Instantiate a dataclass from a dict, ignoring unknown keys."""
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


def document_from_dict(data: dict) -> ParsedDocument:
    """Build a ParsedDocument from its plain-dict form.

    Nested reaction and activity lists are kept as given; they are decoded
    when a document is generated.
    """
    pdata = dict(data.get("patient") or {})
    if isinstance(pdata.get("address"), dict):
        pdata["address"] = _build(Address, pdata["address"])
    pdata["identifiers"] = [_build(Identifier, i) for i in pdata.get("identifiers") or []]

    doc = ParsedDocument(patient=_build(Patient, pdata))
    for attr, cls in RECORD_TYPES.items():
        setattr(doc, attr, [_build(cls, item) for item in data.get(attr) or []])
    return doc


def document_to_dict(doc: ParsedDocument) -> dict:
    return asdict(doc)
