"""Tests for chartbridge.config module."""

from chartbridge.config import (
    DEFAULT_CONFIG_TEMPLATE,
    OrganizationSettings,
    load_config,
    write_default_config,
)


class TestLoadConfig:
    def test_missing_file_uses_defaults(self, tmp_path, capsys):
        config = load_config(str(tmp_path / "absent.toml"))
        assert config["organization"] == OrganizationSettings()
        assert config["logging"]["level"] == "WARNING"
        assert "not found" in capsys.readouterr().err

    def test_missing_file_quiet(self, tmp_path, capsys):
        load_config(str(tmp_path / "absent.toml"), quiet=True)
        assert capsys.readouterr().err == ""

    def test_organization_overrides(self, tmp_path):
        path = tmp_path / "chartbridge.toml"
        path.write_text(
            '[organization]\nname = "Chinle Health"\noid = "1.2.3"\n'
            '[document]\nid_root = "1.2.3.99"\nauthor_npi = "1234567890"\n'
            '[logging]\nlevel = "DEBUG"\n'
        )
        config = load_config(str(path))
        org = config["organization"]
        assert org.name == "Chinle Health"
        assert org.oid == "1.2.3"
        assert org.document_id_root == "1.2.3.99"
        assert org.author_npi == "1234567890"
        assert org.city == "Community"
        assert config["logging"]["level"] == "DEBUG"

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "chartbridge.toml"
        path.write_text('[organization]\nmotto = "ignored"\n')
        config = load_config(str(path))
        assert not hasattr(config["organization"], "motto")

    def test_values_coerced_to_text(self, tmp_path):
        path = tmp_path / "chartbridge.toml"
        path.write_text("[organization]\npostal_code = 86503\n")
        assert load_config(str(path))["organization"].postal_code == "86503"


class TestWriteDefaultConfig:
    def test_writes_template(self, tmp_path):
        path = str(tmp_path / "chartbridge.toml")
        assert write_default_config(path) == path
        with open(path) as f:
            assert f.read() == DEFAULT_CONFIG_TEMPLATE

    def test_template_matches_defaults(self, tmp_path):
        path = str(tmp_path / "chartbridge.toml")
        write_default_config(path)
        config = load_config(path)
        assert config["organization"] == OrganizationSettings()
        assert config["logging"] == {"level": "WARNING"}
