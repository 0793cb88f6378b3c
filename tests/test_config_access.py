import pytest

from utilbot.access import AccessControl
from utilbot.config import load_settings, parse_id_list
from utilbot.constants import CAP_KML, CAP_OCR
from utilbot.errors import ConfigError, OutsideRootError
from utilbot.storage import UserDirectories, safe_file_name


BASE_ENV = {
    "BOT_TOKEN": "123:abc",
    "REGISTERED_USERS": "1, 2,3",
    "BASE_DATA_PATH": "/tmp/utilbot-data",
}


def test_parse_id_list_ignores_blanks():
    assert parse_id_list(" 1, ,2,") == frozenset({1, 2})
    assert parse_id_list(None) == frozenset()


def test_parse_id_list_rejects_garbage():
    with pytest.raises(ConfigError):
        parse_id_list("1,abc", "REGISTERED_USERS")


def test_load_settings_requires_core_variables():
    for name in BASE_ENV:
        env = dict(BASE_ENV)
        del env[name]
        with pytest.raises(ConfigError) as excinfo:
            load_settings(env)
        assert name in str(excinfo.value)


def test_load_settings_defaults():
    settings = load_settings(dict(BASE_ENV, OCR_ACCESS_USERS="2"))
    assert settings.registered_users == frozenset({1, 2, 3})
    assert settings.capability_users[CAP_OCR] == frozenset({2})
    # Missing allow-lists are empty, not errors.
    assert settings.capability_users[CAP_KML] == frozenset()
    assert settings.webhook_url == "POLLING"
    assert settings.ors_api_key == ""


def test_access_control_membership():
    settings = load_settings(dict(BASE_ENV, KML_ACCESS_USERS="1,3"))
    access = AccessControl.from_settings(settings)
    assert access.is_registered(1)
    assert not access.is_registered(42)
    assert not access.is_registered(None)
    assert access.is_member(3, CAP_KML)
    assert not access.is_member(2, CAP_KML)
    assert not access.is_member(1, "unknown")
    assert access.capabilities_of(1) == [CAP_KML]


def test_ensure_user_root_is_idempotent(tmp_path):
    dirs = UserDirectories(tmp_path)
    first = dirs.ensure_user_root(7)
    second = dirs.ensure_user_root(7)
    assert first == second == tmp_path.resolve() / "7"
    assert first.is_dir()


@pytest.mark.parametrize("candidate", [
    "../8/secret.txt",
    "rar_files/../../8/x",
    "/etc/passwd",
    "..",
    "",
])
def test_resolve_within_user_rejects_escapes(tmp_path, candidate):
    dirs = UserDirectories(tmp_path)
    with pytest.raises(OutsideRootError):
        dirs.resolve_within_user(7, candidate)


def test_resolve_within_user_accepts_descendants(tmp_path):
    dirs = UserDirectories(tmp_path)
    path = dirs.resolve_within_user(7, "rar_files/a/../b.zip")
    assert path == tmp_path.resolve() / "7" / "rar_files" / "b.zip"


def test_safe_file_name_strips_directories():
    assert safe_file_name("../../etc/passwd") == "passwd"
    assert safe_file_name("..\\..\\boot.ini") == "boot.ini"
    assert safe_file_name("...") == "file"
    assert safe_file_name('a<b>c?.txt') == "a_b_c_.txt"
