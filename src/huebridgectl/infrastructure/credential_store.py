import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import BaseModel, ValidationError, field_validator

from huebridgectl.domain.models import CredentialRecord, normalize_identifier

LOG = logging.getLogger(__name__)


class _CredentialModel(BaseModel):
    device_id: str
    last_known_address: str
    secret_key: str | None = None
    port: int = 80
    display_name: str | None = None

    @field_validator("device_id", mode="before")
    @classmethod
    def _normalize_device_id(cls, value):
        return normalize_identifier(str(value))

    @field_validator("port", mode="before")
    @classmethod
    def _reject_bool_port(cls, value):
        if isinstance(value, bool):
            raise ValueError("boolean values are not valid for numeric fields")
        return value


def default_credentials_path() -> Path:
    xdg = os.getenv("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "huebridgectl" / "credentials.json"
    return Path.home() / ".config" / "huebridgectl" / "credentials.json"


class JsonFileCredentialStore:
    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path else default_credentials_path()

    def get(self) -> CredentialRecord | None:
        if not self.path.exists():
            return None
        if not self.path.is_file():
            raise ValueError(f"Credentials path is not a file: {self.path}")
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            parsed = _CredentialModel.model_validate(data)
        except OSError as exc:
            raise ValueError(f"Cannot read credentials file: {self.path}") from exc
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ValueError(f"Invalid credentials file: {self.path}: {exc}") from exc
        return CredentialRecord(
            device_id=parsed.device_id,
            last_known_address=parsed.last_known_address,
            secret_key=parsed.secret_key,
            port=parsed.port,
            display_name=parsed.display_name,
        )

    def set(self, record: CredentialRecord) -> None:
        payload = _CredentialModel(
            device_id=record.device_id,
            last_known_address=record.last_known_address,
            secret_key=record.secret_key,
            port=record.port,
            display_name=record.display_name,
        ).model_dump()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".credentials-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        LOG.debug(
            "credentials saved device_id=%s address=%s",
            payload["device_id"],
            payload["last_known_address"],
        )

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
