"""
Purpose:
    - Loads a client config file (TOML)
    - Validates it into a ClientConfig

Layout:
    [client]
    environment = "fxpractice"
    token = "..."
    account_id = 123456

    [stream]
    queue_capacity = 5
    stall_timeout_s = 10.0
"""

import os
import tomllib
from pathlib import Path
from typing import Any

from fxclient.config.configs import ClientConfig, StreamSettings

# Token is read from the environment when the file does not carry one
TOKEN_ENV_VAR = "FXCLIENT_TOKEN"


class ConfigLoader:
    """
    Config-loader; loading toml file.
    """

    def __init__(self, base_dir: str = ".") -> None:
        self._base_dir = base_dir

    def load(self, file_name: str) -> dict[str, Any]:
        path = Path(file_name)
        if not path.is_absolute():
            path = Path(self._base_dir) / file_name

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("rb") as f:
            return tomllib.load(f)

    def load_client_config(self, file_name: str) -> ClientConfig:
        data = self.load(file_name)

        client_data = dict(data.get("client", {}))
        if not client_data.get("token"):
            client_data["token"] = os.environ.get(TOKEN_ENV_VAR, "")

        stream_cfg = StreamSettings(**data.get("stream", {}))
        # Fail early on values the stream core would reject
        stream_cfg.to_stream_config()

        return ClientConfig(**client_data, stream=stream_cfg)
