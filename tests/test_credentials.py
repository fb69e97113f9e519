"""Tests for secret generation and credential files."""
from __future__ import annotations

import stat
from pathlib import Path

import pytest

from instancectl.credentials import ALPHABET, CredentialStore, generate_secret, write_scoped
from instancectl.models import Instance


def _mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


@pytest.fixture
def instance(tmp_path: Path) -> Instance:
    """Return an instance rooted in a temporary directory."""
    directory = tmp_path / "demo.example.org"
    directory.mkdir()
    return Instance(name="demo.example.org", directory=directory, config_filename="docker-compose.yml")


def test_generate_secret_uses_alphanumerics() -> None:
    """Secrets have the requested length and only letters and digits."""
    secret = generate_secret(24)

    assert len(secret) == 24
    assert set(secret) <= set(ALPHABET)


def test_generate_secret_rejects_non_positive_length() -> None:
    """A zero length is refused."""
    with pytest.raises(ValueError):
        generate_secret(0)


def test_write_scoped_sets_owner_only_modes(tmp_path: Path) -> None:
    """The directory is 0700 and the file 0600, even when it existed before."""
    path = tmp_path / "secrets" / "token"
    path.parent.mkdir(mode=0o755)
    path.write_text("old\n", encoding="utf-8")
    path.chmod(0o644)

    write_scoped(path, "new\n")

    assert path.read_text(encoding="utf-8") == "old\nnew\n"
    assert _mode(path.parent) == 0o700
    assert _mode(path) == 0o600


def test_admin_secret_round_trip(instance: Instance) -> None:
    """The admin password is stored and read back through the instance."""
    store = CredentialStore(instance, length=12)

    password = store.create_admin_secret()

    assert len(password) == 12
    assert store.admin_password() == password
    assert instance.admin_password() == password
    assert _mode(instance.secrets_dir / "adminsecret.env") == 0o600


def test_user_secret_records_names(instance: Instance) -> None:
    """The secondary account keeps the given names and a fresh password."""
    store = CredentialStore(instance)

    account = store.create_user_secret("Ada", "Lovelace")

    stored = store.user_account()
    assert stored == account
    assert stored is not None and stored.display_name == "Ada Lovelace"
    assert len(stored.password or "") == 15
    assert store.values()["OPENSLIDES_USER_FIRSTNAME"] == "Ada"


def test_app_key_is_written(instance: Instance) -> None:
    """The application key file holds one secret line."""
    path = CredentialStore(instance).create_app_key()

    assert path == instance.secrets_dir / "django"
    assert len(path.read_text(encoding="utf-8").strip()) == 15


def test_copy_from_duplicates_every_secret(tmp_path: Path, instance: Instance) -> None:
    """Cloning copies each secret file with owner-only permissions."""
    source_dir = tmp_path / "source.example.org"
    source_dir.mkdir()
    source = Instance(name="source.example.org", directory=source_dir, config_filename="docker-compose.yml")
    source_store = CredentialStore(source)
    password = source_store.create_admin_secret()
    source_store.create_app_key()

    copied = CredentialStore(instance).copy_from(source)

    assert [path.name for path in copied] == ["adminsecret.env", "django"]
    assert instance.admin_password() == password
    assert all(_mode(path) == 0o600 for path in copied)


def test_copy_from_without_secrets(tmp_path: Path, instance: Instance) -> None:
    """A source without a secrets directory copies nothing."""
    source = Instance(name="empty.example.org", directory=tmp_path / "empty", config_filename="docker-compose.yml")

    assert CredentialStore(instance).copy_from(source) == []
