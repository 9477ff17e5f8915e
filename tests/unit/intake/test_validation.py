"""Unit tests for upload screening."""

import pytest

pytestmark = pytest.mark.unit


@pytest.fixture
def validator(test_settings):
    """Create a file validator from test settings."""
    from evidentia.intake.validation import FileValidator

    return FileValidator(test_settings)


class TestFileValidator:
    """Tests for FileValidator.validate."""

    def test_accepts_log(self, validator):
        from evidentia.intake.validation import ScreeningAction, sha256_digest

        content = b"2026-03-01 10:00:00 INFO started\n"

        result = validator.validate("app.log", content)

        assert result.action == ScreeningAction.ACCEPT
        assert result.accepted
        assert result.extension == ".log"
        assert result.sha256 == sha256_digest(content)
        assert result.reason is None

    def test_extension_is_case_insensitive(self, validator):
        assert validator.validate("APP.LOG", b"hello\n").accepted

    def test_empty_file_rejected(self, validator):
        from evidentia.intake.validation import ScreeningAction

        result = validator.validate("app.log", b"")

        assert result.action == ScreeningAction.REJECT
        assert result.reason == "File is empty"

    def test_oversized_file_rejected(self, validator, test_settings):
        result = validator.validate("app.log", b"x" * (test_settings.max_file_size + 1))

        assert result.action.value == "reject"
        assert "exceeds maximum" in result.reason

    def test_file_at_limit_accepted(self, validator, test_settings):
        assert validator.validate("app.log", b"x" * test_settings.max_file_size).accepted

    def test_blocked_extension(self, validator):
        result = validator.validate("setup.exe", b"MZ\x90\x00")

        assert result.action.value == "reject"
        assert result.reason == "File type .exe is blocked"

    def test_unknown_extension(self, validator):
        result = validator.validate("notes.md", b"# notes")

        assert result.action.value == "reject"
        assert result.reason == "File type .md is not allowed"

    def test_no_extension(self, validator):
        result = validator.validate("README", b"hello")

        assert result.reason == "File type (none) is not allowed"

    def test_magic_mismatch_quarantined(self, validator):
        """Test a file whose content contradicts its extension is quarantined."""
        from evidentia.intake.validation import ScreeningAction

        result = validator.validate("invoice.pdf", b"MZ this is really an executable")

        assert result.action == ScreeningAction.QUARANTINE
        assert "expected format for .pdf" in result.reason
        assert result.sha256 is not None

    def test_magic_match_accepted(self, validator):
        assert validator.validate("report.pdf", b"%PDF-1.7 rest of file").accepted

    def test_pcap_either_byte_order(self, validator):
        assert validator.validate("a.pcap", b"\xa1\xb2\xc3\xd4rest").accepted
        assert validator.validate("b.pcap", b"\xd4\xc3\xb2\xa1rest").accepted

    def test_malware_signature_quarantined(self, validator):
        from evidentia.config import EICAR_SIGNATURE

        content = b"header line\n" + EICAR_SIGNATURE.encode() + b"\n"

        result = validator.validate("dropper.txt", content)

        assert result.action.value == "quarantine"
        assert result.reason == "Known malware signature detected"

    def test_malware_signature_case_insensitive(self, validator):
        from evidentia.config import EICAR_SIGNATURE

        result = validator.validate("dropper.log", EICAR_SIGNATURE.lower().encode())

        assert result.action.value == "quarantine"

    def test_custom_lists_from_settings(self, test_settings):
        from evidentia.intake.validation import FileValidator

        settings = test_settings.model_copy(update={"allowed_extensions": ["md"], "blocked_extensions": []})
        validator = FileValidator(settings)

        assert validator.validate("notes.md", b"# notes").accepted
        assert not validator.validate("app.log", b"x").accepted


class TestSettingsParsing:
    """Tests for comma separated list settings."""

    def test_comma_separated_extensions(self, monkeypatch):
        from evidentia.config import Settings

        monkeypatch.setenv("EVIDENTIA_ALLOWED_EXTENSIONS", ".log, .txt ,.csv")

        settings = Settings()

        assert settings.allowed_extensions == [".log", ".txt", ".csv"]
