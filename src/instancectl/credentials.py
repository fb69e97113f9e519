"""Secret generation and owner-only credential files for instances."""
from __future__ import annotations

import os
import secrets
import shutil
import string
from dataclasses import dataclass
from pathlib import Path

from .models import Instance, UserAccount, format_env, read_env_file

ALPHABET = string.ascii_letters + string.digits


def generate_secret(length: int = 15) -> str:
    """Return a random alphanumeric string of *length* characters."""
    if length < 1:
        raise ValueError("Secret length must be positive.")
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def write_scoped(path: Path, content: str) -> None:
    """Append *content* to *path*, readable by the owner only.

    The parent directory is created with mode 0700 and the file is forced to
    0600 even when it already existed.
    """
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    os.chmod(path.parent, 0o700)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
    with os.fdopen(fd, "a", encoding="utf-8") as handle:
        handle.write(content)
    os.chmod(path, 0o600)


@dataclass(slots=True)
class CredentialStore:
    """Create and read the secrets of one instance."""

    instance: Instance
    length: int = 15
    admin_file: str = "adminsecret.env"
    user_file: str = "usersecret.env"
    app_key_file: str = "django"

    @property
    def directory(self) -> Path:
        """Return the instance secrets directory."""
        return self.instance.secrets_dir

    def create_app_key(self) -> Path:
        """Write the application's secret key."""
        path = self.directory / self.app_key_file
        write_scoped(path, generate_secret(self.length) + "\n")
        return path

    def create_admin_secret(self) -> str:
        """Generate and store the initial admin password."""
        password = generate_secret(self.length)
        write_scoped(
            self.directory / self.admin_file,
            format_env({"OPENSLIDES_ADMIN_PASSWORD": password}),
        )
        return password

    def create_user_secret(self, first_name: str, last_name: str) -> UserAccount:
        """Generate and store the secondary user account."""
        account = UserAccount(first_name, last_name, generate_secret(self.length))
        write_scoped(
            self.directory / self.user_file,
            format_env(
                {
                    "OPENSLIDES_USER_FIRSTNAME": first_name,
                    "OPENSLIDES_USER_LASTNAME": last_name,
                    "OPENSLIDES_USER_PASSWORD": account.password or "",
                }
            ),
        )
        return account

    def copy_from(self, source: Instance) -> list[Path]:
        """Copy every secret file of *source* into this instance."""
        copied: list[Path] = []
        if not source.secrets_dir.is_dir():
            return copied
        self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        os.chmod(self.directory, 0o700)
        for entry in sorted(source.secrets_dir.iterdir()):
            if not entry.is_file():
                continue
            destination = self.directory / entry.name
            shutil.copyfile(entry, destination)
            os.chmod(destination, 0o600)
            copied.append(destination)
        return copied

    # Reading ---------------------------------------------------------------
    def admin_password(self) -> str | None:
        """Return the stored admin password."""
        return self.instance.admin_password(self.admin_file)

    def user_account(self) -> UserAccount | None:
        """Return the stored secondary account."""
        return self.instance.user_account(self.user_file)

    def values(self) -> dict[str, str]:
        """Return every ``KEY=VALUE`` pair from the credential files."""
        merged: dict[str, str] = {}
        for filename in (self.admin_file, self.user_file):
            merged.update(read_env_file(self.directory / filename))
        return merged


__all__ = ["ALPHABET", "CredentialStore", "generate_secret", "write_scoped"]
