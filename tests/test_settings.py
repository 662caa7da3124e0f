"""Tests for the YAML settings loader."""
import pytest

from config.settings import Settings, load_settings


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    monkeypatch.setattr("config.settings._settings", None)


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings == Settings()
        assert settings.timezone == "Asia/Bahrain"
        assert settings.booking.max_list_rows == 10

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WHAPI_INQUIRY_LABEL_ID", "lbl-42")
        monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db:5432/flows")
        path = tmp_path / "settings.yaml"
        path.write_text(
            "database:\n"
            "  url: ${DATABASE_URL}\n"
            "  store_backend: sql\n"
            "whapi:\n"
            "  mock: 'true'\n"
            "  timeout: 5\n"
            "  inquiry_label_id: ${WHAPI_INQUIRY_LABEL_ID}\n"
        )
        settings = load_settings(str(path))
        assert settings.database.url == "postgresql://u:p@db:5432/flows"
        assert settings.database.store_backend == "sql"
        assert settings.whapi.mock is True
        assert settings.whapi.timeout == 5.0
        assert settings.whapi.inquiry_label_id == "lbl-42"

    def test_unset_variable_is_left_verbatim(self, tmp_path, monkeypatch):
        monkeypatch.delenv("FLOWRELAY_MISSING", raising=False)
        path = tmp_path / "settings.yaml"
        path.write_text("whapi:\n  chatbot_label_id: ${FLOWRELAY_MISSING}\n")
        assert load_settings(str(path)).whapi.chatbot_label_id == "${FLOWRELAY_MISSING}"

    def test_sections_override(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            "timezone: Asia/Dubai\n"
            "http_action:\n  max_timeout: 12\n"
            "booking:\n  max_list_rows: 5\n  already_booked_message: Booked already\n"
        )
        settings = load_settings(str(path))
        assert settings.timezone == "Asia/Dubai"
        assert settings.http_action.max_timeout == 12.0
        assert settings.http_action.default_timeout == 10.0
        assert settings.booking.max_list_rows == 5
        assert settings.booking.already_booked_message == "Booked already"

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("app_name: Clinic Bot\n")
        monkeypatch.setenv("FLOWRELAY_CONFIG", str(path))
        assert load_settings().app_name == "Clinic Bot"
