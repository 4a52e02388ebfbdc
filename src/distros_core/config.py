"""Environment-based configuration for remote execution and cluster access."""

import os
from dataclasses import dataclass
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from distros_core.errors import ActionValidationError

# Key location when the framework runs inside its own container image
CONTAINER_KEY_PATH = Path(
    "/go/src/github.com/rancher/distros-test-framework/config/.ssh/aws_key.pem"
)


@dataclass(frozen=True)
class SSHCredentials:
    """Resolved (user, private-key-path) pair used to dial nodes."""

    user: str
    key_path: Path | None


def _as_path(value: str) -> Path | None:
    return Path(value).expanduser() if value else None


def is_running_in_container() -> bool:
    """Best-effort check for a container runtime."""
    return Path("/.dockerenv").exists() or os.environ.get("container") is not None


class Settings(BaseSettings):
    """Distros framework configuration.

    Variable names follow the provisioners that export them, so there is no
    common prefix. For example:
        PROVISIONER_MODULE=qainfra SSH_USER=ubuntu SSH_LOCAL_KEY_PATH=~/.ssh/id
        PROVISIONER_MODULE=legacy aws_user=ec2-user access_key=/keys/aws.pem
    """

    # Which provisioner exported the node credentials: "legacy" or "qainfra"
    provisioner_module: str = "legacy"

    # legacy (Terraform) credentials
    access_key: str = ""
    aws_user: str = ""

    # qainfra (Ansible + OpenTofu) credentials
    ssh_local_key_path: str = ""
    ssh_user: str = ""

    ssh_port: int = Field(default=22, ge=1, le=65535)
    ssh_connect_timeout: float = Field(default=30.0, gt=0)

    kubeconfig: str | None = None
    log_level: str = "info"

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    def resolve_ssh_credentials(self) -> SSHCredentials:
        """Resolve the SSH user and key path for the active provisioner.

        Raises:
            ActionValidationError: If the provisioner module is unknown
        """
        module = self.provisioner_module.strip().lower()
        in_container = is_running_in_container()

        if module in ("legacy", ""):
            key_path = self.access_key
            if not key_path and in_container:
                key_path = str(CONTAINER_KEY_PATH)
            return SSHCredentials(user=self.aws_user, key_path=_as_path(key_path))

        if module == "qainfra":
            key_path = self.ssh_local_key_path
            if in_container:
                key_path = str(CONTAINER_KEY_PATH)
            return SSHCredentials(user=self.ssh_user, key_path=_as_path(key_path))

        raise ActionValidationError(
            f"unknown PROVISIONER_MODULE: {self.provisioner_module}"
        )


def get_settings() -> Settings:
    """Read settings from the current environment."""
    return Settings()
