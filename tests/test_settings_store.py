import pytest

from tcm_pipeline.config import PipelineConfig
from tcm_pipeline.crypto import decrypt_bytes, encrypt_bytes, generate_key
from tcm_pipeline.prompts import resolve_template
from tcm_pipeline.settings_store import AdminSettings, AdminSettingsStore, resolve_api_key, store_from_config


def _cfg(**overrides) -> PipelineConfig:
    values = {"google_api_key": None, "settings_path": None, "settings_fernet_key": None}
    values.update(overrides)
    return PipelineConfig(**values)


def test_encrypt_decrypt_roundtrip():
    key = generate_key()
    assert decrypt_bytes(key, encrypt_bytes(key, b"hello")) == b"hello"


def test_decrypt_with_wrong_key_raises_value_error():
    token = encrypt_bytes(generate_key(), b"hello")
    with pytest.raises(ValueError, match="Failed to decrypt"):
        decrypt_bytes(generate_key(), token)


def test_save_and_load(tmp_path):
    path = tmp_path / "settings.bin"
    key = generate_key()
    AdminSettingsStore(str(path), key).save(
        AdminSettings(gemini_api_key="AIza-admin", system_prompts={"doctor_chat": "Custom"})
    )

    assert b"AIza-admin" not in path.read_bytes()
    store = AdminSettingsStore(str(path), key)
    assert store.api_key() == "AIza-admin"
    assert store.get_prompt("doctor_chat") == "Custom"
    assert store.get_prompt("report_chat") is None
    assert resolve_template("doctor_chat", store) == "Custom"


def test_missing_file_yields_empty_settings(tmp_path):
    store = AdminSettingsStore(str(tmp_path / "nope.bin"), generate_key())
    assert not store.exists()
    assert store.load() == AdminSettings()


def test_load_is_cached_until_refresh(tmp_path):
    path = tmp_path / "settings.bin"
    key = generate_key()
    reader = AdminSettingsStore(str(path), key)
    writer = AdminSettingsStore(str(path), key)
    writer.save(AdminSettings(gemini_api_key="first"))
    assert reader.api_key() == "first"

    writer.save(AdminSettings(gemini_api_key="second"))
    assert reader.api_key() == "first"
    reader.refresh()
    assert reader.api_key() == "second"


def test_blank_key_is_treated_as_unset():
    assert AdminSettings.from_payload({"gemini_api_key": "  "}).gemini_api_key is None


def test_store_from_config(tmp_path):
    assert store_from_config(_cfg()) is None
    with pytest.raises(ValueError):
        store_from_config(_cfg(settings_path=str(tmp_path / "s.bin")))
    store = store_from_config(_cfg(settings_path=str(tmp_path / "s.bin"), settings_fernet_key=generate_key()))
    assert isinstance(store, AdminSettingsStore)


def test_admin_key_wins_over_environment(tmp_path):
    key = generate_key()
    store = AdminSettingsStore(str(tmp_path / "s.bin"), key)
    store.save(AdminSettings(gemini_api_key="from-admin"))
    assert resolve_api_key(_cfg(google_api_key="from-env"), store) == "from-admin"


def test_environment_key_used_when_admin_key_unset(tmp_path):
    store = AdminSettingsStore(str(tmp_path / "s.bin"), generate_key())
    assert resolve_api_key(_cfg(google_api_key="from-env"), store) == "from-env"
    assert resolve_api_key(_cfg(google_api_key="from-env")) == "from-env"
    assert resolve_api_key(_cfg()) is None


def test_unreadable_settings_fall_back_to_environment(tmp_path):
    path = tmp_path / "s.bin"
    AdminSettingsStore(str(path), generate_key()).save(AdminSettings(gemini_api_key="x"))
    wrong = AdminSettingsStore(str(path), generate_key())
    assert resolve_api_key(_cfg(google_api_key="from-env"), wrong) == "from-env"
