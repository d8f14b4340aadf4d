import logging
import shutil
from pathlib import Path

from dotenv import dotenv_values
from pydantic import ValidationError

from errors import ConfigError
from models.deployment import AppConfig
from safety.guardrails import REQUIRED_KEYS, validate_app_config

logger = logging.getLogger(__name__)

DEFAULT_PORT = 5678


class EnvFileConfigSource:
    """Resolves the managed unit's settings from its .env file."""

    def __init__(self, env_path: Path, example_path: Path | None = None):
        self.env_path = Path(env_path)
        self.example_path = (
            Path(example_path)
            if example_path is not None
            else self.env_path.with_name(f"{self.env_path.name}.example")
        )

    def read(self) -> dict[str, str]:
        """Raw key/value pairs from the .env file."""
        if not self.env_path.is_file():
            if self.example_path.is_file():
                logger.warning("%s not found. Creating from %s...", self.env_path, self.example_path)
                try:
                    shutil.copyfile(self.example_path, self.env_path)
                except OSError as e:
                    raise ConfigError(
                        f"Cannot create {self.env_path} from {self.example_path.name}: {e}",
                        detail={"env_file": str(self.env_path)},
                    ) from e
                raise ConfigError(
                    f"Created {self.env_path} from {self.example_path.name}; "
                    "please update it with your configuration",
                    detail={"env_file": str(self.env_path)},
                )
            raise ConfigError(
                f"{self.env_path} not found and no {self.example_path.name} to create it from",
                detail={"env_file": str(self.env_path)},
            )
        return {k: v for k, v in dotenv_values(self.env_path).items() if v is not None}

    def resolve(self) -> AppConfig:
        """Read, parse and validate; raises ConfigError on any problem."""
        values = self.read()

        missing = [k for k in REQUIRED_KEYS if k not in values]
        if missing:
            raise ConfigError(
                f"Required variable(s) not found in {self.env_path.name}: {', '.join(missing)}",
                detail={"missing": missing, "env_file": str(self.env_path)},
            )

        try:
            config = AppConfig(
                host_ip=values["HOST_IP"],
                port=values.get("N8N_PORT") or DEFAULT_PORT,
                basic_auth_user=values["N8N_BASIC_AUTH_USER"],
                basic_auth_password=values["N8N_BASIC_AUTH_PASSWORD"],
                values=values,
            )
        except ValidationError as e:
            raise ConfigError(
                f"Invalid value in {self.env_path.name}: {e.errors()[0]['msg']}",
                detail={"fields": [".".join(map(str, err["loc"])) for err in e.errors()]},
            ) from e

        return validate_app_config(config)
