"""SQLite database layer for chartbridge.

ChartbridgeDB wraps a SQLite database with:
- Schema initialization from schema.sql
- UPSERT-based loading keyed on record id (re-imports update in place)
- Typed fetchers implementing the RecordStore interface, most-recent-first
- Read-only query helper returning list[dict]
- Load logging for audit trail
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import asdict, fields, is_dataclass, replace
from datetime import datetime, timezone
from pathlib import Path

from chartbridge.exceptions import NotFoundError
from chartbridge.models import (
    Address,
    Allergy,
    CarePlan,
    Encounter,
    Identifier,
    Immunization,
    Medication,
    ParsedDocument,
    Patient,
    Problem,
    Procedure,
    Result,
    SmokingStatus,
    Vital,
)

logger = logging.getLogger(__name__)

# Mapping: (record list attr on ParsedDocument, SQLite table, dataclass, ORDER BY)
_TABLE_MAP: list[tuple[str, str, type, str]] = [
    ("allergies", "allergies", Allergy, "onset_date DESC"),
    ("medications", "medications", Medication, "start_date DESC"),
    ("problems", "problems", Problem, "onset_date DESC"),
    ("procedures", "procedures", Procedure, "date DESC"),
    ("results", "results", Result, "date DESC"),
    ("vitals", "vitals", Vital, "date DESC"),
    ("immunizations", "immunizations", Immunization, "date DESC"),
    ("care_plans", "care_plans", CarePlan, "rowid DESC"),
    ("social_history", "social_history", SmokingStatus, "date DESC"),
    ("encounters", "encounters", Encounter, "start_date DESC"),
]

# Columns holding JSON-encoded nested lists
_JSON_COLUMNS = {"reactions", "activities"}

# Most recent encounters included in a document
ENCOUNTER_LIMIT = 50

_PATIENT_COLUMNS = [
    "id", "mrn", "given_name", "family_name", "gender", "birth_date",
    "race_code", "race", "ethnicity_code", "ethnicity", "language",
    "street", "city", "state", "postal_code", "country", "phone", "identifiers",
]


def _get_schema_sql() -> str:
    """Read the schema.sql file bundled with the package."""
    schema_path = Path(__file__).parent / "schema.sql"
    return schema_path.read_text()


def _nested_json(value) -> str:
    """Encode a nested list for storage. Text is stored as-is."""
    if isinstance(value, str):
        return value
    return json.dumps([asdict(v) if is_dataclass(v) else v for v in value or []])


def _record_to_row(record, patient_id: str) -> dict:
    """Convert a dataclass record to a dict suitable for INSERT."""
    row = {"patient_id": patient_id}
    for f in fields(record):
        value = getattr(record, f.name)
        if f.name in _JSON_COLUMNS:
            value = _nested_json(value)
        row[f.name] = value
    if not row["id"]:
        row["id"] = str(uuid.uuid4())
    return row


def _row_to_record(dc_type: type, row: sqlite3.Row):
    keys = row.keys()
    return dc_type(**{f.name: row[f.name] for f in fields(dc_type) if f.name in keys})


def _build_upsert_sql(table: str, columns: list[str], unique_cols: tuple[str, ...] = ("id",)) -> str:
    """Build INSERT ... ON CONFLICT ... DO UPDATE SET SQL."""
    col_names = ", ".join(columns)
    placeholders = ", ".join("?" for _ in columns)
    conflict_cols = ", ".join(unique_cols)

    update_cols = [c for c in columns if c not in unique_cols]
    if not update_cols:
        return f"INSERT OR IGNORE INTO {table} ({col_names}) VALUES ({placeholders})"

    update_clause = ", ".join(f"{c} = excluded.{c}" for c in update_cols)
    return (
        f"INSERT INTO {table} ({col_names}) VALUES ({placeholders}) "
        f"ON CONFLICT({conflict_cols}) DO UPDATE SET {update_clause}"
    )


class ChartbridgeDB:
    """SQLite-backed clinical record store."""

    def __init__(self, db_path: str = "chartbridge.db"):
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")

    def init_schema(self) -> None:
        """Create all tables from schema.sql (IF NOT EXISTS)."""
        self.conn.executescript(_get_schema_sql())

    # --- Loading ---

    def _upsert_patient(self, patient: Patient) -> None:
        addr = patient.address or Address()
        row = {
            "id": patient.id,
            "mrn": patient.mrn,
            "given_name": patient.given_name,
            "family_name": patient.family_name,
            "gender": patient.gender,
            "birth_date": patient.birth_date,
            "race_code": patient.race_code,
            "race": patient.race,
            "ethnicity_code": patient.ethnicity_code,
            "ethnicity": patient.ethnicity,
            "language": patient.language,
            "street": addr.street,
            "city": addr.city,
            "state": addr.state,
            "postal_code": addr.postal_code,
            "country": addr.country,
            "phone": patient.phone,
            "identifiers": json.dumps([asdict(i) for i in patient.identifiers]),
        }
        self.conn.execute(_build_upsert_sql("patients", _PATIENT_COLUMNS), [row[c] for c in _PATIENT_COLUMNS])

    def save_patient(self, patient: Patient) -> str:
        """Insert or update a patient. Returns its id, generated when the patient has none."""
        if not patient.id:
            patient = replace(patient, id=str(uuid.uuid4()))
        with self.conn:
            self._upsert_patient(patient)
        return patient.id

    def load_document(self, document: ParsedDocument, patient_id: str | None = None) -> dict[str, int]:
        """Load a patient and all of their records using UPSERT on record id.

        Args:
            document: Patient plus per-category records.
            patient_id: Store under this patient id instead of document.patient.id.
                The document itself is left unchanged; the id used is recorded
                in load_history().

        Returns:
            Per-table record counts for this load.
        """
        patient = replace(document.patient, id=patient_id or document.patient.id or str(uuid.uuid4()))

        counts: dict[str, int] = {"patients": 1}
        with self.conn:
            self._upsert_patient(patient)
            for attr, table, _dc_type, _order in _TABLE_MAP:
                records = getattr(document, attr)
                counts[table] = len(records)
                if not records:
                    continue
                rows = [_record_to_row(r, patient.id) for r in records]
                cols = list(rows[0].keys())
                sql = _build_upsert_sql(table, cols)
                self.conn.executemany(sql, [[r[c] for c in cols] for r in rows])

            self.conn.execute(
                "INSERT INTO load_log (patient_id, loaded_at, record_count) VALUES (?, ?, ?)",
                (patient.id, datetime.now(timezone.utc).isoformat(), sum(counts.values()) - 1),
            )

        logger.info("Loaded patient %s: %s", patient.id, counts)
        return counts

    # --- RecordStore ---

    def fetch_patient(self, patient_id: str) -> Patient:
        row = self.conn.execute("SELECT * FROM patients WHERE id = ?", (patient_id,)).fetchone()
        if row is None:
            raise NotFoundError("Patient", patient_id)
        address = None
        if any(row[c] for c in ("street", "city", "state", "postal_code", "country")):
            address = Address(
                street=row["street"],
                city=row["city"],
                state=row["state"],
                postal_code=row["postal_code"],
                country=row["country"],
            )
        identifiers = [Identifier(**i) for i in json.loads(row["identifiers"] or "[]")]
        return Patient(
            id=row["id"],
            mrn=row["mrn"],
            given_name=row["given_name"],
            family_name=row["family_name"],
            gender=row["gender"],
            birth_date=row["birth_date"],
            race_code=row["race_code"],
            race=row["race"],
            ethnicity_code=row["ethnicity_code"],
            ethnicity=row["ethnicity"],
            language=row["language"],
            address=address,
            phone=row["phone"],
            identifiers=identifiers,
        )

    def _fetch(self, table: str, patient_id: str, where: str = "", limit: int | None = None) -> list:
        dc_type, order = next((d, o) for _, t, d, o in _TABLE_MAP if t == table)
        sql = f"SELECT * FROM {table} WHERE patient_id = ?{where} ORDER BY {order}"
        if limit:
            sql += f" LIMIT {int(limit)}"
        rows = self.conn.execute(sql, (patient_id,)).fetchall()
        return [_row_to_record(dc_type, r) for r in rows]

    def fetch_allergies(self, patient_id: str) -> list[Allergy]:
        return self._fetch("allergies", patient_id)

    def fetch_medications(self, patient_id: str) -> list[Medication]:
        return self._fetch("medications", patient_id)

    def fetch_problems(self, patient_id: str) -> list[Problem]:
        return self._fetch("problems", patient_id)

    def fetch_procedures(self, patient_id: str) -> list[Procedure]:
        return self._fetch("procedures", patient_id)

    def fetch_results(self, patient_id: str) -> list[Result]:
        return self._fetch("results", patient_id)

    def fetch_vitals(self, patient_id: str) -> list[Vital]:
        return self._fetch("vitals", patient_id)

    def fetch_immunizations(self, patient_id: str) -> list[Immunization]:
        return self._fetch("immunizations", patient_id)

    def fetch_care_plans(self, patient_id: str) -> list[CarePlan]:
        """Active care plans only."""
        return self._fetch("care_plans", patient_id, where=" AND status = 'active'")

    def fetch_social_history(self, patient_id: str) -> list[SmokingStatus]:
        return self._fetch("social_history", patient_id)

    def fetch_encounters(self, patient_id: str) -> list[Encounter]:
        return self._fetch("encounters", patient_id, limit=ENCOUNTER_LIMIT)

    def fetch_encounter(self, patient_id: str, encounter_id: str) -> Encounter:
        row = self.conn.execute(
            "SELECT * FROM encounters WHERE id = ? AND patient_id = ?",
            (encounter_id, patient_id),
        ).fetchone()
        if row is None:
            raise NotFoundError("Encounter", encounter_id)
        return _row_to_record(Encounter, row)

    # --- Inspection ---

    def query(self, sql: str, params: tuple = ()) -> list[dict]:
        """Execute a read-only SQL query and return results as list of dicts."""
        cursor = self.conn.execute(sql, params)
        columns = [desc[0] for desc in cursor.description] if cursor.description else []
        return [dict(zip(columns, row, strict=False)) for row in cursor.fetchall()]

    def summary(self) -> dict[str, int]:
        """Return row counts for all main tables (auto-discovered from schema)."""
        rows = self.query(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' "
            "ORDER BY name"
        )
        result = {}
        for r in rows:
            table = r["name"]
            if table == "load_log":
                continue  # Exclude audit log from summary display
            row = self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
            result[table] = row[0]
        return result

    def load_history(self) -> list[dict]:
        """Return the load audit log, newest first."""
        return self.query("SELECT patient_id, loaded_at, record_count FROM load_log ORDER BY id DESC")

    def close(self) -> None:
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
