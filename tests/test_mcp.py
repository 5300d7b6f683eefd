"""Tests for chartbridge.mcp.server tools.

Tests the tool functions directly (not via MCP protocol).
"""

import pytest

from chartbridge.db import ChartbridgeDB


@pytest.fixture
def mcp_db(tmp_path, monkeypatch, sample_document):
    """Set up a test database and configure MCP to use it."""
    db_path = str(tmp_path / "mcp_test.db")
    db = ChartbridgeDB(db_path)
    db.init_schema()
    db.load_document(sample_document)
    db.close()

    import chartbridge.mcp.server as server

    monkeypatch.setattr(server, "DB_PATH", db_path)
    monkeypatch.setattr(server, "CONFIG_PATH", str(tmp_path / "absent.toml"))
    return server


class TestGenerateDocument:
    def test_ccd(self, mcp_db):
        xml = mcp_db.generate_document("ccd", "P001")
        assert xml.startswith("<?xml")
        assert "Continuity of Care Document" in xml

    def test_referral(self, mcp_db):
        xml = mcp_db.generate_document(
            "referral", "P001", reason="Retina exam", referred_to="Lena Yazzie", referred_to_npi="42"
        )
        assert "Retina exam" in xml
        assert 'extension="42"' in xml

    def test_discharge(self, mcp_db):
        xml = mcp_db.generate_document("discharge", "P001", encounter_id="E1")
        assert "Discharge Diagnosis" in xml

    def test_unknown_kind(self, mcp_db):
        assert mcp_db.generate_document("memo", "P001") == "Error: Unknown document kind: memo"

    def test_unknown_patient(self, mcp_db):
        result = mcp_db.generate_document("ccd", "nobody")
        assert result == "Error: Patient with identifier 'nobody' not found"

    def test_missing_encounter(self, mcp_db):
        assert mcp_db.generate_document("transfer", "P001").startswith("Error:")


class TestParseCcda:
    def test_parse(self, mcp_db):
        parsed = mcp_db.parse_ccda(mcp_db.generate_document("ccd", "P001"))
        assert parsed["patient"]["id"] == "P001"
        assert len(parsed["allergies"]) == 2
        assert parsed["allergies"][0]["reactions"] == [{"code": "247472004", "display_name": "Hives"}]

    def test_invalid(self, mcp_db):
        assert mcp_db.parse_ccda("<note/>").startswith("Error: Invalid C-CDA document")


class TestReconcileCcda:
    def test_reconcile(self, mcp_db):
        result = mcp_db.reconcile_ccda("P001", mcp_db.generate_document("ccd", "P001"))
        assert result["counts"] == {"new": 0, "matched": 6, "conflict": 0}
        assert result["patient_id"] == "P001"
        assert len(result["matched_items"]) == 6

    def test_unknown_patient(self, mcp_db):
        xml = mcp_db.generate_document("ccd", "P001")
        assert mcp_db.reconcile_ccda("nobody", xml).startswith("Error: Patient")


class TestDatabaseSummary:
    def test_summary(self, mcp_db):
        summary = mcp_db.get_database_summary()
        assert summary["table_counts"]["patients"] == 1
        assert summary["load_history"][0]["patient_id"] == "P001"
