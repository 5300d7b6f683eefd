"""Shared test fixtures for chartbridge tests."""

import itertools
from datetime import datetime, timezone

import pytest
from lxml import etree

from chartbridge.db import ChartbridgeDB
from chartbridge.models import (
    Address,
    Allergy,
    CarePlan,
    CarePlanActivity,
    Encounter,
    Identifier,
    Immunization,
    Medication,
    ParsedDocument,
    Patient,
    Problem,
    Procedure,
    Reaction,
    Result,
    SmokingStatus,
    Vital,
)

HL7 = {"h": "urn:hl7-org:v3"}

FIXED_NOW = datetime(2025, 1, 15, 9, 30, 0, tzinfo=timezone.utc)


def parse(xml: str):
    """Parse generated XML for structural assertions."""
    return etree.fromstring(xml.encode("utf-8"))


def section_by_title(root, title):
    for section in root.iterfind(".//h:section", HL7):
        t = section.find("h:title", HL7)
        if t is not None and t.text == title:
            return section
    return None


@pytest.fixture
def id_factory():
    """Deterministic identifier generator: id-1, id-2, ..."""
    counter = itertools.count(1)
    return lambda: f"id-{next(counter)}"


@pytest.fixture
def tmp_db(tmp_path):
    """Create a temporary SQLite database with schema initialized."""
    db_path = str(tmp_path / "test.db")
    db = ChartbridgeDB(db_path)
    db.init_schema()
    yield db
    db.close()


@pytest.fixture
def sample_patient():
    return Patient(
        id="P001",
        mrn="MRN-0001",
        given_name="Mary",
        family_name="Runningwater",
        gender="female",
        birth_date="1968-04-12",
        race_code="1002-5",
        race="American Indian or Alaska Native",
        ethnicity_code="2186-5",
        ethnicity="Not Hispanic or Latino",
        language="en-US",
        address=Address(
            street="12 Mesa Road",
            city="Window Rock",
            state="AZ",
            postal_code="86515",
            country="US",
        ),
        phone="+1-928-555-0100",
        identifiers=[Identifier(system="2.16.840.1.113883.19.5", value="P001")],
    )


@pytest.fixture
def sample_document(sample_patient):
    """A patient with records in every category, dates at second precision."""
    return ParsedDocument(
        patient=sample_patient,
        allergies=[
            Allergy(
                id="A1",
                code="7980",
                code_system="2.16.840.1.113883.6.88",
                display_name="Penicillin G",
                status="active",
                criticality="high",
                onset_date="2019-06-01T08:00:00",
                reactions=[Reaction(code="247472004", display_name="Hives")],
            ),
            Allergy(
                id="A2",
                code="1191",
                code_system="2.16.840.1.113883.6.88",
                display_name="Aspirin",
                status="inactive",
                onset_date="2015-02-10T12:15:30",
            ),
        ],
        medications=[
            Medication(
                id="M1",
                code="860975",
                code_system="2.16.840.1.113883.6.88",
                display_name="Metformin 500 MG Oral Tablet",
                status="active",
                dosage="1 tablet twice daily with meals",
                route_code="C38288",
                route="Oral",
                frequency="BID",
                start_date="2024-03-05T14:30:00",
            ),
            Medication(
                id="M2",
                code="197361",
                code_system="2.16.840.1.113883.6.88",
                display_name="Amlodipine 5 MG Oral Tablet",
                status="stopped",
                start_date="2022-01-10T09:00:00",
                end_date="2023-11-30T17:45:00",
            ),
        ],
        problems=[
            Problem(
                id="PR1",
                code="44054006",
                code_system="2.16.840.1.113883.6.96",
                display_name="Type 2 diabetes mellitus",
                status="active",
                onset_date="2018-09-20T10:00:00",
            ),
            Problem(
                id="PR2",
                code="38341003",
                code_system="2.16.840.1.113883.6.96",
                display_name="Hypertension",
                status="resolved",
                onset_date="2016-05-01T00:00:00",
                resolved_date="2023-11-30T17:45:00",
            ),
        ],
        procedures=[
            Procedure(
                id="PROC1",
                code="73761001",
                code_system="2.16.840.1.113883.6.96",
                display_name="Colonoscopy",
                status="completed",
                date="2023-07-14T11:20:00",
            ),
        ],
        results=[
            Result(
                id="R1",
                code="4548-4",
                code_system="2.16.840.1.113883.6.1",
                display_name="Hemoglobin A1c",
                value="7.2",
                value_numeric=7.2,
                unit="%",
                date="2024-12-01T07:45:00",
                interpretation_code="H",
                interpretation="High",
                reference_range="4.0-5.6 %",
            ),
        ],
        vitals=[
            Vital(
                id="V1",
                code="8480-6",
                code_system="2.16.840.1.113883.6.1",
                display_name="Systolic blood pressure",
                value=132,
                unit="mm[Hg]",
                date="2024-12-01T07:30:00",
            ),
        ],
        immunizations=[
            Immunization(
                id="I1",
                code="140",
                code_system="2.16.840.1.113883.12.292",
                display_name="Influenza, seasonal, injectable",
                date="2024-10-02T10:00:00",
                status="completed",
                lot_number="FLU-2024-77",
            ),
        ],
        care_plans=[
            CarePlan(
                id="CP1",
                title="Diabetes management",
                description="Lower A1c below 7 percent",
                status="active",
                activities=[
                    CarePlanActivity(description="Nutrition counseling", status="active"),
                ],
            ),
        ],
        social_history=[
            SmokingStatus(
                id="S1",
                code="8517006",
                code_system="2.16.840.1.113883.6.96",
                display_name="Former smoker",
                date="2024-01-05T09:00:00",
            ),
        ],
        encounters=[
            Encounter(
                id="E1",
                code="99223",
                code_system="2.16.840.1.113883.6.12",
                display_name="Inpatient admission",
                status="finished",
                class_code="IMP",
                start_date="2024-11-28T22:10:00",
                end_date="2024-12-02T14:00:00",
                performer="Dr. Begay",
            ),
        ],
    )


@pytest.fixture
def loaded_db(tmp_db, sample_document):
    """Database holding sample_document under patient P001."""
    tmp_db.load_document(sample_document)
    return tmp_db
