"""Assemble complete C-CDA documents.

A document is header + (kind-specific header blocks) + an ordered set of
sections. The whole tree is built first and serialized once at the end, so a
failure anywhere yields no output at all.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import uuid4

from lxml import etree

from chartbridge.ccda import templates as t
from chartbridge.ccda.sections import IdFactory, build_narrative_section, build_section
from chartbridge.ccda.templates import Category, DocumentKind
from chartbridge.config import OrganizationSettings
from chartbridge.core.cda import XSI, format_hl7_date, format_hl7_timestamp, new_root, serialize, sub
from chartbridge.core.utils import split_provider_name
from chartbridge.exceptions import ValidationError
from chartbridge.models import Encounter, ParsedDocument, Patient, Provider, ReferralDetails

logger = logging.getLogger(__name__)

DEFAULT_REFERRAL_REASON = "Referral for evaluation and management"
HOSPITAL_COURSE_TEXT = "See clinical notes for detailed hospital course."

_GENDER_CODES = {"male": "M", "female": "F"}


def build_record_target(parent: etree._Element, patient: Patient) -> etree._Element:
    """Patient demographics. Missing address parts and codes get nullFlavor NI."""
    role = sub(sub(parent, "recordTarget"), "patientRole")
    sub(role, "id", {"root": t.PATIENT_ID_ROOT, "extension": patient.id})
    if patient.mrn:
        sub(role, "id", {"root": t.MRN_ROOT, "extension": patient.mrn})
    for ident in patient.identifiers:
        if (ident.system, ident.value) in (
            (t.PATIENT_ID_ROOT, patient.id),
            (t.MRN_ROOT, patient.mrn),
        ):
            continue
        sub(role, "id", {"root": ident.system, "extension": ident.value})

    addr = sub(role, "addr", {"use": "HP"})
    a = patient.address
    for name, value in (
        ("streetAddressLine", a.street if a else ""),
        ("city", a.city if a else ""),
        ("state", a.state if a else ""),
        ("postalCode", a.postal_code if a else ""),
    ):
        if value:
            sub(addr, name, text=value)
        else:
            sub(addr, name, {"nullFlavor": "NI"})
    sub(addr, "country", text=(a.country if a and a.country else "US"))

    if patient.phone:
        sub(role, "telecom", {"value": f"tel:{patient.phone}", "use": "HP"})
    else:
        sub(role, "telecom", {"nullFlavor": "NI"})

    pat = sub(role, "patient")
    name = sub(pat, "name", {"use": "L"})
    for part, value in (("given", patient.given_name), ("family", patient.family_name)):
        if value:
            sub(name, part, text=value)
        else:
            sub(name, part, {"nullFlavor": "NI"})

    sub(
        pat,
        "administrativeGenderCode",
        {
            "code": _GENDER_CODES.get(patient.gender, "UN"),
            "codeSystem": t.ADMINISTRATIVE_GENDER,
            "displayName": patient.gender or "Unknown",
        },
    )
    birth = format_hl7_date(patient.birth_date)
    sub(pat, "birthTime", {"value": birth} if birth else {"nullFlavor": "NI"})

    for element, code, display in (
        ("raceCode", patient.race_code, patient.race),
        ("ethnicGroupCode", patient.ethnicity_code, patient.ethnicity),
    ):
        if code:
            sub(
                pat,
                element,
                {
                    "code": code,
                    "codeSystem": t.RACE_ETHNICITY,
                    "codeSystemName": "Race & Ethnicity - CDC",
                    "displayName": display,
                },
            )
        else:
            sub(pat, element, {"nullFlavor": "NI"})

    if patient.language:
        comm = sub(pat, "languageCommunication")
        sub(comm, "languageCode", {"code": patient.language})
        sub(comm, "preferenceInd", {"value": "true"})
    return role


def _organization_addr(parent: etree._Element, org: OrganizationSettings) -> None:
    addr = sub(parent, "addr")
    sub(addr, "streetAddressLine", text=org.street)
    sub(addr, "city", text=org.city)
    sub(addr, "state", text=org.state)
    sub(addr, "postalCode", text=org.postal_code)
    sub(addr, "country", text=org.country)


def _organization(parent: etree._Element, name: str, org: OrganizationSettings) -> None:
    el = sub(parent, name)
    sub(el, "id", {"root": org.oid})
    sub(el, "name", text=org.name)
    sub(el, "telecom", {"use": "WP", "value": f"tel:{org.phone}"})
    _organization_addr(el, org)


def build_author(parent: etree._Element, effective_time: str, org: OrganizationSettings) -> None:
    author = sub(parent, "author")
    sub(author, "time", {"value": effective_time})
    assigned = sub(author, "assignedAuthor")
    sub(assigned, "id", {"root": t.NPI, "extension": org.author_npi})
    _organization_addr(assigned, org)
    sub(assigned, "telecom", {"use": "WP", "value": f"tel:{org.phone}"})
    device = sub(assigned, "assignedAuthoringDevice")
    sub(device, "manufacturerModelName", text=org.device_model)
    sub(device, "softwareName", text=org.software_name)
    _organization(assigned, "representedOrganization", org)


def build_custodian(parent: etree._Element, org: OrganizationSettings) -> None:
    assigned = sub(sub(parent, "custodian"), "assignedCustodian")
    _organization(assigned, "representedCustodianOrganization", org)


def build_information_recipient(parent: etree._Element, provider: Provider) -> None:
    recipient = sub(sub(parent, "informationRecipient"), "intendedRecipient")
    if provider.npi:
        sub(recipient, "id", {"root": t.NPI, "extension": provider.npi})
    else:
        sub(recipient, "id", {"nullFlavor": "NI"})
    given, family = split_provider_name(provider.name)
    name = sub(sub(recipient, "informationRecipient"), "name")
    sub(name, "prefix", text="Dr.")
    sub(name, "given", text=given)
    sub(name, "family", text=family)


def build_encompassing_encounter(parent: etree._Element, encounter: Encounter) -> None:
    enc = sub(sub(parent, "componentOf"), "encompassingEncounter")
    sub(enc, "id", {"root": t.ENCOUNTER_ID_ROOT, "extension": encounter.id})
    period = sub(enc, "effectiveTime")
    for bound, value in (("low", encounter.start_date), ("high", encounter.end_date)):
        ts = format_hl7_timestamp(value)
        sub(period, bound, {"value": ts} if ts else {"nullFlavor": "NI"})


def _reason_paragraphs(referral: ReferralDetails) -> list[str]:
    paragraphs = [referral.reason or DEFAULT_REFERRAL_REASON]
    if referral.clinical_history:
        paragraphs.append(f"Clinical History: {referral.clinical_history}")
    if referral.requested_services:
        paragraphs.append(f"Requested Services: {referral.requested_services}")
    if referral.urgency:
        paragraphs.append(f"Urgency: {referral.urgency}")
    if referral.referring_provider:
        paragraphs.append(f"Referring Provider: {referral.referring_provider.name}")
    return paragraphs


def compose(
    kind: DocumentKind,
    document: ParsedDocument,
    *,
    referral: ReferralDetails | None = None,
    encounter: Encounter | None = None,
    settings: OrganizationSettings | None = None,
    new_id: IdFactory = uuid4,
    now: datetime | None = None,
) -> str:
    """Compose and serialize one document of ``kind``.

    ``document`` supplies the patient and the per-category records, already
    ordered by the caller. Discharge and transfer documents require
    ``encounter``. Apart from the document id and timestamp (taken from
    ``new_id`` and ``now``), the output is a pure function of the inputs.
    """
    if kind.requires_encounter and encounter is None:
        raise ValidationError(f"A {kind.title} requires an encounter")
    org = settings or OrganizationSettings()
    referral = referral or ReferralDetails()
    effective_time = format_hl7_timestamp(now or datetime.now(timezone.utc))
    document_id = str(new_id())

    root = new_root("ClinicalDocument")
    root.set(f"{{{XSI}}}schemaLocation", "urn:hl7-org:v3 CDA.xsd")
    sub(root, "realmCode", {"code": "US"})
    type_root, type_ext = t.CDA_TYPE_ID
    sub(root, "typeId", {"root": type_root, "extension": type_ext})
    sub(root, "templateId", {"root": t.US_REALM_HEADER, "extension": t.HEADER_EXTENSION})
    sub(root, "templateId", {"root": kind.template_id, "extension": t.HEADER_EXTENSION})
    sub(root, "id", {"root": org.document_id_root, "extension": document_id})
    sub(
        root,
        "code",
        {"code": kind.loinc, "codeSystem": t.LOINC, "codeSystemName": "LOINC", "displayName": kind.display},
    )
    sub(root, "title", text=kind.title)
    sub(root, "effectiveTime", {"value": effective_time})
    sub(
        root,
        "confidentialityCode",
        {
            "code": "N",
            "codeSystem": t.CONFIDENTIALITY,
            "codeSystemName": "Confidentiality",
            "displayName": "normal",
        },
    )
    sub(root, "languageCode", {"code": "en-US"})

    build_record_target(root, document.patient)
    build_author(root, effective_time, org)
    build_custodian(root, org)
    if kind is DocumentKind.REFERRAL and referral.referred_to:
        build_information_recipient(root, referral.referred_to)
    if kind.requires_encounter:
        build_encompassing_encounter(root, encounter)

    body = sub(sub(root, "component"), "structuredBody")
    for entry in t.DOCUMENT_SECTIONS[kind]:
        if isinstance(entry, Category):
            body.append(build_section(entry, getattr(document, entry.value), new_id))
        elif entry == t.NARRATIVE_REASON:
            body.append(build_narrative_section(t.REASON_FOR_REFERRAL, _reason_paragraphs(referral)))
        elif entry == t.NARRATIVE_DIAGNOSIS:
            active = [p.display_name or "Unknown" for p in document.problems if p.status == "active"]
            body.append(build_narrative_section(t.DISCHARGE_DIAGNOSIS, items=active))
        elif entry == t.NARRATIVE_COURSE:
            body.append(build_narrative_section(t.HOSPITAL_COURSE, [HOSPITAL_COURSE_TEXT]))

    xml = serialize(root)
    logger.info(
        "Generated %s %s for patient %s (%d sections)",
        kind.title,
        document_id,
        document.patient.id,
        len(t.DOCUMENT_SECTIONS[kind]),
    )
    return xml
