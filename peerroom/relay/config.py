"""Relay configuration file parsing."""
from __future__ import annotations

import logging
import os
import pathlib
import sys
from typing import List
from typing import Optional
from typing import Union

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
else:  # pragma: <3.11 cover
    import tomli as tomllib

import tomli_w
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

from peerroom.relay.constants import DEFAULT_ALLOWED_ORIGINS
from peerroom.relay.constants import MESSAGE_MAX_SIZE
from peerroom.relay.constants import ROOM_TTL_MS


class RelayLoggingConfig(BaseModel):
    """Relay logging configuration.

    Attributes:
        log_file: Optional file to append logs to in addition to stdout.
        default_level: Logging level for the root logger.
    """

    model_config = ConfigDict(extra='forbid')

    log_file: Optional[str] = None  # noqa: UP007
    default_level: Union[int, str] = logging.INFO  # noqa: UP007


class RelayConfig(BaseModel):
    """Relay serving configuration.

    Example:
        ```toml title="relay.toml"
        host = "0.0.0.0"
        port = 8780
        database_path = "/var/lib/peerroom/rooms.db"
        allowed_origins = ["https://example.com", "https://*.example.com"]

        [logging]
        log_file = "/var/log/peerroom/relay.log"
        default_level = "INFO"
        ```

    Attributes:
        host: Network interface the server binds to.
        port: Network port the server binds to.
        database_path: Optional path to the SQLite database file used to
            store rooms. If `None`, rooms are kept in an in-memory database.
        room_ttl_ms: Lifetime in milliseconds of a room that is not extended.
        max_message_size: Maximum size in bytes of a posted message.
        allowed_origins: Shell-style patterns of origins permitted to use
            the relay.
        logging: Logging configuration.

    Raises:
        ValueError: If the port is not in the range [1, 65535] or the TTL or
            maximum message size are not positive.
    """

    model_config = ConfigDict(extra='forbid')

    host: str = '127.0.0.1'
    port: int = 8780
    database_path: Optional[str] = None  # noqa: UP007
    room_ttl_ms: int = ROOM_TTL_MS
    max_message_size: int = MESSAGE_MAX_SIZE
    allowed_origins: List[str] = Field(  # noqa: UP006
        default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS),
    )
    logging: RelayLoggingConfig = Field(default_factory=RelayLoggingConfig)

    @field_validator('port')
    @classmethod
    def _port_validator(cls, v: int) -> int:
        if v < 1 or v > 65535:
            raise ValueError('Port must be in range [1, 65535].')
        return v

    @field_validator('room_ttl_ms', 'max_message_size')
    @classmethod
    def _positive_validator(cls, v: int) -> int:
        if v < 1:
            raise ValueError('Value must be greater than zero.')
        return v

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> RelayConfig:
        """Parse a TOML config file.

        Omitted values are set to their defaults.

        Args:
            filepath: Path to TOML file to parse.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the file cannot be parsed or contains an invalid
                value.
        """
        with open(filepath, 'rb') as f:
            try:
                data = tomllib.load(f)
                return cls.model_validate(data, strict=True)
            except Exception as e:
                raise ValueError(
                    f'Unable to parse ({filepath}): {e!s}.',
                ) from None


def write_config(config: RelayConfig, filepath: str | pathlib.Path) -> None:
    """Write a config as TOML, creating parent directories as needed.

    Args:
        config: Configuration to write.
        filepath: Destination file.
    """
    parent = os.path.dirname(os.path.abspath(filepath))
    os.makedirs(parent, exist_ok=True)
    with open(filepath, 'wb') as f:
        tomli_w.dump(config.model_dump(exclude_none=True), f)
