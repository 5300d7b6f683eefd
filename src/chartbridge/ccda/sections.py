"""Section builders: one clinical category -> one document section.

Every builder has the signature ``(records, new_id) -> <component>`` and
returns a detached lxml element holding a ``<section>`` with:

- a narrative ``<text>`` block: a table with one row per record, or a
  single paragraph with the category's "no data" sentence, and
- one structured ``<entry>`` per record carrying the fixed entry templates.

Builders do no I/O and never serialize. Record order is preserved as given.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from typing import Any
from uuid import uuid4

from lxml import etree

from chartbridge.ccda import templates as t
from chartbridge.ccda.templates import Category, SectionTemplate, TemplateId
from chartbridge.core.cda import format_hl7_timestamp, sub, tag
from chartbridge.core.utils import format_quantity
from chartbridge.models import (
    Allergy,
    CarePlan,
    CarePlanActivity,
    Encounter,
    Immunization,
    Medication,
    Problem,
    Procedure,
    Reaction,
    Result,
    SmokingStatus,
    Vital,
)

logger = logging.getLogger(__name__)

IdFactory = Callable[[], Any]

# Medication status <-> HL7 ActStatus
MEDICATION_TO_ACT_STATUS = {
    "active": "active",
    "completed": "completed",
    "stopped": "aborted",
    "on-hold": "suspended",
    "cancelled": "cancelled",
    "entered-in-error": "nullified",
}
ACT_TO_MEDICATION_STATUS = {v: k for k, v in MEDICATION_TO_ACT_STATUS.items()}

# Allergy criticality <-> HL7 ObservationValue (CRIT*)
CRITICALITY_SYSTEM = "2.16.840.1.113883.5.1063"
CRITICALITY_CODES = {
    "low": ("CRITL", "Low criticality"),
    "high": ("CRITH", "High criticality"),
    "unable-to-assess": ("CRITU", "Unable to assess criticality"),
}
CRITICALITY_BY_CODE = {code: name for name, (code, _) in CRITICALITY_CODES.items()}


# ---------------------------------------------------------------------------
# Element helpers
# ---------------------------------------------------------------------------


def _uid(new_id: IdFactory) -> str:
    return str(new_id())


def _template(parent: etree._Element, template: TemplateId) -> etree._Element:
    return sub(parent, "templateId", {"root": template.root, "extension": template.extension})


def _time(parent: etree._Element, name: str, value: str) -> etree._Element:
    """Emit a TS element, or nullFlavor NI when the date is missing or unusable."""
    ts = format_hl7_timestamp(value)
    if ts:
        return sub(parent, name, {"value": ts})
    return sub(parent, name, {"nullFlavor": "NI"})


def _coded(
    parent: etree._Element,
    name: str,
    code: str,
    system: str,
    display: str,
    xsi_type: str | None = None,
) -> etree._Element:
    """Emit a CD/CE element.

    Without a code the element is nullFlavored and the display text, if
    any, goes to originalText.
    """
    attrs: dict[str, str | None] = {"xsi:type": xsi_type}
    if code:
        attrs.update(
            code=code,
            codeSystem=system,
            codeSystemName=t.CODE_SYSTEM_NAMES.get(system),
            displayName=display or None,
        )
        return sub(parent, name, attrs)
    attrs["nullFlavor"] = "NI"
    el = sub(parent, name, attrs)
    if display:
        sub(el, "originalText", text=display)
    return el


def _section(template: SectionTemplate) -> tuple[etree._Element, etree._Element, etree._Element]:
    """Create component/section with template, code and title. Returns (component, section, text)."""
    component = etree.Element(tag("component"))
    section = sub(component, "section")
    sub(section, "templateId", {"root": template.root, "extension": template.extension})
    sub(
        section,
        "code",
        {
            "code": template.loinc,
            "codeSystem": t.LOINC,
            "codeSystemName": "LOINC",
            "displayName": template.display,
        },
    )
    sub(section, "title", text=template.title)
    text = sub(section, "text")
    return component, section, text


def _narrative(text: etree._Element, template: SectionTemplate, rows: list[list[str]]) -> None:
    if not rows:
        sub(text, "paragraph", text=template.empty_text)
        return
    table = sub(text, "table", {"border": "1", "width": "100%"})
    head = sub(sub(table, "thead"), "tr")
    for header in template.headers:
        sub(head, "th", text=header)
    body = sub(table, "tbody")
    for row in rows:
        tr = sub(body, "tr")
        for cell in row:
            sub(tr, "td", text=cell)


def _entry(section: etree._Element) -> etree._Element:
    return sub(section, "entry", {"typeCode": "DRIV"})


def _load_json_list(value: Any, what: str) -> list:
    """Decode a stored nested list. Malformed data yields [] and a warning."""
    if isinstance(value, list):
        return value
    if not value:
        return []
    try:
        decoded = json.loads(value)
    except (TypeError, ValueError) as e:
        logger.warning("Skipping malformed %s data: %s", what, e)
        return []
    if isinstance(decoded, dict):
        decoded = [decoded]
    if not isinstance(decoded, list):
        logger.warning("Skipping %s data: expected a list, got %s", what, type(decoded).__name__)
        return []
    return decoded


def decode_reactions(value: list | str | None) -> list[Reaction]:
    """Decode allergy reactions from their stored form.

    Accepts Reaction objects, flat ``{"code", "display_name"}`` dicts, and
    FHIR-style ``{"manifestation": [{"coding": [...]}]}`` dicts. Individual
    items that cannot be read are skipped.
    """
    reactions: list[Reaction] = []
    for item in _load_json_list(value, "reaction"):
        if isinstance(item, Reaction):
            reactions.append(item)
        elif isinstance(item, dict) and "manifestation" in item:
            for m in item.get("manifestation") or []:
                coding = (m.get("coding") or [{}])[0] if isinstance(m, dict) else {}
                if not isinstance(coding, dict):
                    continue
                reactions.append(
                    Reaction(code=coding.get("code", ""), display_name=coding.get("display", ""))
                )
        elif isinstance(item, dict):
            reactions.append(
                Reaction(
                    code=str(item.get("code", "")),
                    display_name=str(item.get("display_name") or item.get("display", "")),
                )
            )
        else:
            logger.warning("Skipping unreadable reaction entry: %r", item)
    return reactions


def decode_activities(value: list | str | None) -> list[CarePlanActivity]:
    """Decode care plan activities (flat dicts or FHIR ``{"detail": {...}}``)."""
    activities: list[CarePlanActivity] = []
    for item in _load_json_list(value, "care plan activity"):
        if isinstance(item, CarePlanActivity):
            activities.append(item)
            continue
        if not isinstance(item, dict):
            logger.warning("Skipping unreadable care plan activity: %r", item)
            continue
        detail = item.get("detail", item)
        if not isinstance(detail, dict):
            logger.warning("Skipping unreadable care plan activity: %r", item)
            continue
        activities.append(
            CarePlanActivity(
                description=str(detail.get("description", "")),
                status=str(detail.get("status", "")),
            )
        )
    return activities


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_allergies(allergies: Sequence[Allergy], new_id: IdFactory = uuid4) -> etree._Element:
    template = t.SECTIONS[Category.ALLERGIES]
    component, section, text = _section(template)
    _narrative(
        text,
        template,
        [
            [a.display_name or "Unknown", a.status, a.criticality or "N/A", a.onset_date or "Unknown"]
            for a in allergies
        ],
    )

    for a in allergies:
        system = a.code_system or t.RXNORM
        act = sub(_entry(section), "act", {"classCode": "ACT", "moodCode": "EVN"})
        _template(act, t.ALLERGY_CONCERN_ACT)
        sub(act, "id", {"root": _uid(new_id)})
        sub(act, "code", {"code": "CONC", "codeSystem": t.ACT_CODE, "displayName": "Concern"})
        sub(act, "statusCode", {"code": "active" if a.status == "active" else "completed"})
        _time(sub(act, "effectiveTime"), "low", a.onset_date)

        rel = sub(act, "entryRelationship", {"typeCode": "SUBJ"})
        obs = sub(rel, "observation", {"classCode": "OBS", "moodCode": "EVN"})
        _template(obs, t.ALLERGY_OBSERVATION)
        sub(obs, "id", {"root": a.id or _uid(new_id)})
        sub(obs, "code", {"code": "ASSERTION", "codeSystem": t.ACT_CODE_ASSERTION})
        sub(obs, "statusCode", {"code": "completed"})
        _time(sub(obs, "effectiveTime"), "low", a.onset_date)
        _coded(obs, "value", a.code, system, a.display_name, xsi_type="CD")

        participant = sub(obs, "participant", {"typeCode": "CSM"})
        role = sub(participant, "participantRole", {"classCode": "MANU"})
        entity = sub(role, "playingEntity", {"classCode": "MMAT"})
        _coded(entity, "code", a.code, system, a.display_name)

        for reaction in decode_reactions(a.reactions):
            rrel = sub(obs, "entryRelationship", {"typeCode": "MFST", "inversionInd": "true"})
            robs = sub(rrel, "observation", {"classCode": "OBS", "moodCode": "EVN"})
            _template(robs, t.REACTION_OBSERVATION)
            sub(robs, "id", {"root": _uid(new_id)})
            sub(robs, "code", {"code": "ASSERTION", "codeSystem": t.ACT_CODE_ASSERTION})
            sub(robs, "statusCode", {"code": "completed"})
            _coded(robs, "value", reaction.code, t.SNOMED, reaction.display_name, xsi_type="CD")

        if a.criticality in CRITICALITY_CODES:
            code, display = CRITICALITY_CODES[a.criticality]
            crel = sub(obs, "entryRelationship", {"typeCode": "SUBJ", "inversionInd": "true"})
            cobs = sub(crel, "observation", {"classCode": "OBS", "moodCode": "EVN"})
            _template(cobs, t.CRITICALITY_OBSERVATION)
            sub(cobs, "code", {"code": "82606-5", "codeSystem": t.LOINC, "displayName": "Criticality"})
            sub(cobs, "statusCode", {"code": "completed"})
            sub(
                cobs,
                "value",
                {"xsi:type": "CD", "code": code, "codeSystem": CRITICALITY_SYSTEM, "displayName": display},
            )

    return component


def build_medications(medications: Sequence[Medication], new_id: IdFactory = uuid4) -> etree._Element:
    template = t.SECTIONS[Category.MEDICATIONS]
    component, section, text = _section(template)
    _narrative(
        text,
        template,
        [
            [
                m.display_name or "Unknown",
                m.dosage or "N/A",
                m.route or "N/A",
                m.frequency or "N/A",
                m.status,
                m.start_date or "Unknown",
            ]
            for m in medications
        ],
    )

    for m in medications:
        sa = sub(
            _entry(section),
            "substanceAdministration",
            {"classCode": "SBADM", "moodCode": "INT" if m.status == "active" else "EVN"},
        )
        _template(sa, t.MEDICATION_ACTIVITY)
        sub(sa, "id", {"root": m.id or _uid(new_id)})
        if m.dosage:
            sub(sa, "text", text=m.dosage)
        sub(sa, "statusCode", {"code": MEDICATION_TO_ACT_STATUS.get(m.status, "completed")})
        period = sub(sa, "effectiveTime", {"xsi:type": "IVL_TS"})
        _time(period, "low", m.start_date)
        _time(period, "high", m.end_date)
        if m.route_code:
            _coded(sa, "routeCode", m.route_code, t.NCI_ROUTE, m.route)

        product = sub(sub(sa, "consumable"), "manufacturedProduct", {"classCode": "MANU"})
        _template(product, t.MEDICATION_INFORMATION)
        material = sub(product, "manufacturedMaterial")
        _coded(material, "code", m.code, m.code_system or t.RXNORM, m.display_name)

    return component


def build_problems(problems: Sequence[Problem], new_id: IdFactory = uuid4) -> etree._Element:
    template = t.SECTIONS[Category.PROBLEMS]
    component, section, text = _section(template)
    _narrative(
        text,
        template,
        [[p.display_name or "Unknown", p.code, p.status, p.onset_date or "Unknown"] for p in problems],
    )

    for p in problems:
        act = sub(_entry(section), "act", {"classCode": "ACT", "moodCode": "EVN"})
        _template(act, t.PROBLEM_CONCERN_ACT)
        sub(act, "id", {"root": _uid(new_id)})
        sub(act, "code", {"code": "CONC", "codeSystem": t.ACT_CODE, "displayName": "Concern"})
        sub(act, "statusCode", {"code": "active" if p.status == "active" else "completed"})
        period = sub(act, "effectiveTime")
        _time(period, "low", p.onset_date)
        if p.resolved_date:
            _time(period, "high", p.resolved_date)

        rel = sub(act, "entryRelationship", {"typeCode": "SUBJ"})
        obs = sub(rel, "observation", {"classCode": "OBS", "moodCode": "EVN"})
        _template(obs, t.PROBLEM_OBSERVATION)
        sub(obs, "id", {"root": p.id or _uid(new_id)})
        code, display = t.PROBLEM_OBSERVATION_CODE
        _coded(obs, "code", code, t.SNOMED, display)
        sub(obs, "statusCode", {"code": "completed"})
        period = sub(obs, "effectiveTime")
        _time(period, "low", p.onset_date)
        if p.resolved_date:
            _time(period, "high", p.resolved_date)
        _coded(obs, "value", p.code, p.code_system or t.SNOMED, p.display_name, xsi_type="CD")

    return component


def build_procedures(procedures: Sequence[Procedure], new_id: IdFactory = uuid4) -> etree._Element:
    template = t.SECTIONS[Category.PROCEDURES]
    component, section, text = _section(template)
    _narrative(
        text,
        template,
        [[p.display_name or "Unknown", p.code, p.status, p.date or "Unknown"] for p in procedures],
    )

    for p in procedures:
        proc = sub(_entry(section), "procedure", {"classCode": "PROC", "moodCode": "EVN"})
        _template(proc, t.PROCEDURE_ACTIVITY)
        sub(proc, "id", {"root": p.id or _uid(new_id)})
        _coded(proc, "code", p.code, p.code_system or t.SNOMED, p.display_name)
        sub(proc, "statusCode", {"code": "completed" if p.status == "completed" else "active"})
        _time(proc, "effectiveTime", p.date)

    return component


def _is_plain_quantity(r: Result) -> bool:
    """True when the original text is the bare number (no "<", ">" or words)."""
    if r.value_numeric is None:
        return False
    if not r.value:
        return True
    try:
        return float(r.value.strip()) == r.value_numeric
    except ValueError:
        return False


def _result_value_text(r: Result) -> str:
    if _is_plain_quantity(r):
        return f"{format_quantity(r.value_numeric)} {r.unit}".strip()
    if r.value:
        return f"{r.value} {r.unit}".strip()
    return "N/A"


def build_results(results: Sequence[Result], new_id: IdFactory = uuid4) -> etree._Element:
    template = t.SECTIONS[Category.RESULTS]
    component, section, text = _section(template)
    _narrative(
        text,
        template,
        [
            [
                r.display_name or "Unknown",
                _result_value_text(r),
                r.interpretation or "N/A",
                r.reference_range or "N/A",
                r.date or "Unknown",
            ]
            for r in results
        ],
    )

    for r in results:
        system = r.code_system or t.LOINC
        organizer = sub(_entry(section), "organizer", {"classCode": "CLUSTER", "moodCode": "EVN"})
        _template(organizer, t.RESULT_ORGANIZER)
        sub(organizer, "id", {"root": _uid(new_id)})
        _coded(organizer, "code", r.code, system, r.display_name)
        sub(organizer, "statusCode", {"code": "completed"})

        obs = sub(sub(organizer, "component"), "observation", {"classCode": "OBS", "moodCode": "EVN"})
        _template(obs, t.RESULT_OBSERVATION)
        sub(obs, "id", {"root": r.id or _uid(new_id)})
        _coded(obs, "code", r.code, system, r.display_name)
        sub(obs, "statusCode", {"code": "completed"})
        _time(obs, "effectiveTime", r.date)
        if _is_plain_quantity(r):
            sub(
                obs,
                "value",
                {"xsi:type": "PQ", "value": format_quantity(r.value_numeric), "unit": r.unit or None},
            )
        elif r.value:
            sub(obs, "value", {"xsi:type": "ST"}, text=r.value)
        else:
            sub(obs, "value", {"xsi:type": "PQ", "nullFlavor": "NI"})
        if r.interpretation_code:
            _coded(
                obs,
                "interpretationCode",
                r.interpretation_code,
                t.OBSERVATION_INTERPRETATION,
                r.interpretation,
            )
        if r.reference_range:
            observation_range = sub(sub(obs, "referenceRange"), "observationRange")
            sub(observation_range, "text", text=r.reference_range)

    return component


def build_vitals(vitals: Sequence[Vital], new_id: IdFactory = uuid4) -> etree._Element:
    template = t.SECTIONS[Category.VITALS]
    component, section, text = _section(template)
    _narrative(
        text,
        template,
        [
            [
                v.display_name or "Unknown",
                f"{format_quantity(v.value)} {v.unit}".strip() if v.value is not None else "N/A",
                v.date or "Unknown",
            ]
            for v in vitals
        ],
    )

    for v in vitals:
        organizer = sub(_entry(section), "organizer", {"classCode": "CLUSTER", "moodCode": "EVN"})
        _template(organizer, t.VITAL_SIGNS_ORGANIZER)
        sub(organizer, "id", {"root": _uid(new_id)})
        code, display = t.VITAL_SIGNS_CODE
        _coded(organizer, "code", code, t.SNOMED, display)
        sub(organizer, "statusCode", {"code": "completed"})
        _time(organizer, "effectiveTime", v.date)

        obs = sub(sub(organizer, "component"), "observation", {"classCode": "OBS", "moodCode": "EVN"})
        _template(obs, t.VITAL_SIGN_OBSERVATION)
        sub(obs, "id", {"root": v.id or _uid(new_id)})
        _coded(obs, "code", v.code, v.code_system or t.LOINC, v.display_name)
        sub(obs, "statusCode", {"code": "completed"})
        _time(obs, "effectiveTime", v.date)
        if v.value is not None:
            sub(obs, "value", {"xsi:type": "PQ", "value": format_quantity(v.value), "unit": v.unit or None})
        else:
            sub(obs, "value", {"xsi:type": "PQ", "nullFlavor": "NI"})

    return component


def build_immunizations(
    immunizations: Sequence[Immunization], new_id: IdFactory = uuid4
) -> etree._Element:
    template = t.SECTIONS[Category.IMMUNIZATIONS]
    component, section, text = _section(template)
    _narrative(
        text,
        template,
        [
            [i.display_name or "Unknown", i.date or "Unknown", i.status, i.lot_number or "N/A"]
            for i in immunizations
        ],
    )

    for i in immunizations:
        sa = sub(
            _entry(section),
            "substanceAdministration",
            {
                "classCode": "SBADM",
                "moodCode": "EVN",
                "negationInd": "true" if i.status == "not-done" else "false",
            },
        )
        _template(sa, t.IMMUNIZATION_ACTIVITY)
        sub(sa, "id", {"root": i.id or _uid(new_id)})
        sub(sa, "statusCode", {"code": "completed"})
        _time(sa, "effectiveTime", i.date)
        product = sub(sub(sa, "consumable"), "manufacturedProduct", {"classCode": "MANU"})
        _template(product, t.IMMUNIZATION_MEDICATION_INFORMATION)
        material = sub(product, "manufacturedMaterial")
        _coded(material, "code", i.code, i.code_system or t.CVX, i.display_name)
        if i.lot_number:
            sub(material, "lotNumberText", text=i.lot_number)

    return component


def build_plan_of_care(care_plans: Sequence[CarePlan], new_id: IdFactory = uuid4) -> etree._Element:
    template = t.SECTIONS[Category.PLAN_OF_CARE]
    component, section, text = _section(template)
    _narrative(
        text,
        template,
        [[cp.title or "Untitled Plan", cp.status, cp.description or "N/A"] for cp in care_plans],
    )

    for cp in care_plans:
        act = sub(_entry(section), "act", {"classCode": "ACT", "moodCode": "INT"})
        _template(act, t.PLAN_OF_CARE_ACTIVITY)
        sub(act, "id", {"root": cp.id or _uid(new_id)})
        code = sub(act, "code", {"nullFlavor": "NI"})
        if cp.title:
            sub(code, "originalText", text=cp.title)
        sub(act, "statusCode", {"code": "active" if cp.status == "active" else "completed"})
        if cp.description:
            sub(act, "text", text=cp.description)

        for activity in decode_activities(cp.activities):
            rel = sub(act, "entryRelationship", {"typeCode": "REFR"})
            inner = sub(rel, "act", {"classCode": "ACT", "moodCode": "INT"})
            _template(inner, t.PLAN_OF_CARE_ACTIVITY)
            sub(inner, "id", {"root": _uid(new_id)})
            sub(inner, "code", {"nullFlavor": "NI"})
            sub(inner, "statusCode", {"code": activity.status or "active"})
            sub(inner, "text", text=activity.description)

    return component


def build_social_history(
    smoking: Sequence[SmokingStatus], new_id: IdFactory = uuid4
) -> etree._Element:
    template = t.SECTIONS[Category.SOCIAL_HISTORY]
    component, section, text = _section(template)
    _narrative(
        text,
        template,
        [["Smoking Status", s.display_name or "Unknown", s.date or "Unknown"] for s in smoking],
    )

    for s in smoking:
        obs = sub(_entry(section), "observation", {"classCode": "OBS", "moodCode": "EVN"})
        _template(obs, t.SMOKING_STATUS)
        sub(obs, "id", {"root": s.id or _uid(new_id)})
        code, display = t.SMOKING_STATUS_CODE
        _coded(obs, "code", code, t.LOINC, display)
        sub(obs, "statusCode", {"code": "completed"})
        _time(obs, "effectiveTime", s.date)
        _coded(obs, "value", s.code, s.code_system or t.SNOMED, s.display_name, xsi_type="CD")

    return component


def build_encounters(encounters: Sequence[Encounter], new_id: IdFactory = uuid4) -> etree._Element:
    template = t.SECTIONS[Category.ENCOUNTERS]
    component, section, text = _section(template)
    _narrative(
        text,
        template,
        [
            [
                e.display_name or e.class_code or "Unknown",
                e.start_date or "Unknown",
                e.end_date or "Ongoing",
                e.status,
            ]
            for e in encounters
        ],
    )

    for e in encounters:
        enc = sub(_entry(section), "encounter", {"classCode": "ENC", "moodCode": "EVN"})
        _template(enc, t.ENCOUNTER_ACTIVITY)
        sub(enc, "id", {"root": e.id or _uid(new_id)})
        _coded(enc, "code", e.code, e.code_system or t.CPT, e.display_name)
        period = sub(enc, "effectiveTime")
        _time(period, "low", e.start_date)
        _time(period, "high", e.end_date)
        if e.performer:
            entity = sub(sub(enc, "performer"), "assignedEntity")
            sub(sub(sub(entity, "assignedPerson"), "name"), "family", text=e.performer)

    return component


SECTION_BUILDERS: dict[Category, Callable[..., etree._Element]] = {
    Category.ALLERGIES: build_allergies,
    Category.MEDICATIONS: build_medications,
    Category.PROBLEMS: build_problems,
    Category.PROCEDURES: build_procedures,
    Category.RESULTS: build_results,
    Category.VITALS: build_vitals,
    Category.IMMUNIZATIONS: build_immunizations,
    Category.PLAN_OF_CARE: build_plan_of_care,
    Category.SOCIAL_HISTORY: build_social_history,
    Category.ENCOUNTERS: build_encounters,
}


def build_section(category: Category, records: Sequence, new_id: IdFactory = uuid4) -> etree._Element:
    """Build the section for ``category`` from its records."""
    return SECTION_BUILDERS[category](records, new_id)


def build_narrative_section(
    template: SectionTemplate,
    paragraphs: Sequence[str] = (),
    items: Sequence[str] | None = None,
) -> etree._Element:
    """Build a text-only section: paragraphs, or a list when ``items`` is given."""
    component, _, text = _section(template)
    if items is not None:
        lst = sub(text, "list")
        for item in items:
            sub(lst, "item", text=item)
    for para in paragraphs:
        sub(text, "paragraph", text=para)
    return component
