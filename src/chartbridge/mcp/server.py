"""MCP server for chartbridge: generate, parse, and reconcile C-CDA documents.

Run with: python -m chartbridge.mcp.server
Configure env: CHARTBRIDGE_DB=/path/to/chartbridge.db
               CHARTBRIDGE_CONFIG=/path/to/chartbridge.toml
"""

from __future__ import annotations

import os
from dataclasses import asdict

from mcp.server.fastmcp import FastMCP

from chartbridge.ccda.extract import extract
from chartbridge.ccda.templates import DocumentKind
from chartbridge.config import load_config
from chartbridge.db import ChartbridgeDB
from chartbridge.exceptions import ChartbridgeError
from chartbridge.models import Provider, ReferralDetails, document_to_dict
from chartbridge.service import ClinicalDocumentService

DB_PATH = os.environ.get("CHARTBRIDGE_DB", "chartbridge.db")
CONFIG_PATH = os.environ.get("CHARTBRIDGE_CONFIG", "chartbridge.toml")

mcp = FastMCP(
    "chartbridge",
    instructions=(
        "C-CDA R2.1 document server backed by a SQLite patient record store.\n\n"
        "Key capabilities:\n"
        "- generate_document: Build a CCD, referral note, discharge summary, or "
        "transfer summary for a stored patient\n"
        "- parse_ccda: Extract structured records from a C-CDA XML document\n"
        "- reconcile_ccda: Classify a document's allergies, medications, and problems "
        "as new, matched, or conflicting against stored records\n"
        "- get_database_summary: Table counts and load history\n\n"
        "Start with get_database_summary to see which patients are loaded. "
        "Discharge and transfer summaries need an encounter id."
    ),
)


def _get_db() -> ChartbridgeDB:
    db = ChartbridgeDB(DB_PATH)
    db.init_schema()
    return db


def _get_service(db: ChartbridgeDB) -> ClinicalDocumentService:
    config = load_config(CONFIG_PATH, quiet=True)
    return ClinicalDocumentService(db, settings=config["organization"])


@mcp.tool()
def generate_document(
    kind: str,
    patient_id: str,
    encounter_id: str = "",
    reason: str = "",
    urgency: str = "",
    clinical_history: str = "",
    requested_services: str = "",
    referred_to: str = "",
    referred_to_npi: str = "",
    referred_to_specialty: str = "",
) -> str:
    """Generate a C-CDA document and return its XML.

    Args:
        kind: One of "ccd", "referral", "discharge", "transfer".
        patient_id: Stored patient identifier.
        encounter_id: Required for discharge and transfer summaries.
        reason, urgency, clinical_history, requested_services: Referral free text.
        referred_to, referred_to_npi, referred_to_specialty: Receiving provider (referral).
    """
    try:
        doc_kind = DocumentKind.from_slug(kind)
    except ChartbridgeError as e:
        return f"Error: {e.message}"

    referral = None
    if doc_kind is DocumentKind.REFERRAL:
        referral = ReferralDetails(
            reason=reason,
            urgency=urgency,
            clinical_history=clinical_history,
            requested_services=requested_services,
            referred_to=(
                Provider(name=referred_to, npi=referred_to_npi, specialty=referred_to_specialty)
                if referred_to
                else None
            ),
        )

    db = _get_db()
    try:
        return _get_service(db).generate(
            doc_kind, patient_id, referral=referral, encounter_id=encounter_id or None
        )
    except ChartbridgeError as e:
        return f"Error: {e.message}"
    finally:
        db.close()


@mcp.tool()
def parse_ccda(document: str) -> dict | str:
    """Extract patient demographics and per-category records from C-CDA XML.

    Returns a dict with "patient" plus lists for allergies, medications,
    problems, procedures, results, vitals, immunizations, care_plans,
    social_history, and encounters. Sections missing from the document
    come back as empty lists.
    """
    try:
        return document_to_dict(extract(document))
    except ChartbridgeError as e:
        return f"Error: {e.message}"


@mcp.tool()
def reconcile_ccda(patient_id: str, document: str) -> dict | str:
    """Reconcile a C-CDA document against a stored patient's records.

    Allergies, medications, and problems are matched by exact code. Each
    incoming record is "new" (no stored record has its code), "matched"
    (same code and status), or "conflict" (same code, different status).
    Nothing is written to the database.
    """
    db = _get_db()
    try:
        service = _get_service(db)
        result = service.reconcile(patient_id, service.parse_document(document))
        return {"counts": result.counts(), **asdict(result)}
    except ChartbridgeError as e:
        return f"Error: {e.message}"
    finally:
        db.close()


@mcp.tool()
def get_database_summary() -> dict:
    """Get an overview of what data is loaded in the database."""
    db = _get_db()
    try:
        return {"table_counts": db.summary(), "load_history": db.load_history()}
    finally:
        db.close()


if __name__ == "__main__":
    mcp.run()
