"""Runtime configuration read from the environment."""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    MAX_ROOMS, MAX_PEERS_PER_ROOM, MAX_RELAY_MESSAGE_BYTES,
    MESSAGES_PER_MINUTE, RELAY_BYTES_PER_MINUTE, ROOM_CLAIM_TTL_S,
    INSTANCE_HEADER, DIRECT_TIMEOUT_S,
)


class Settings(BaseSettings):
    """Relay and client settings.

    The instance identity falls back to Fly.io's machine id so that room
    claims name a machine the platform router can replay requests to.
    """

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True,
    )

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    machine_id: str = Field(default="local", validation_alias=AliasChoices("machine_id", "fly_machine_id"))

    redis_url: Optional[str] = Field(default=None)
    redis_token: Optional[str] = Field(default=None)
    room_claim_ttl_s: int = Field(default=ROOM_CLAIM_TTL_S, ge=2)

    max_rooms: int = Field(default=MAX_ROOMS, ge=1)
    max_peers_per_room: int = Field(default=MAX_PEERS_PER_ROOM, ge=1)
    max_relay_message_bytes: int = Field(default=MAX_RELAY_MESSAGE_BYTES, ge=1)
    messages_per_minute: int = Field(default=MESSAGES_PER_MINUTE, ge=1)
    relay_bytes_per_minute: int = Field(default=RELAY_BYTES_PER_MINUTE, ge=1)

    instance_header: str = Field(default=INSTANCE_HEADER)
    direct_timeout_s: float = Field(default=DIRECT_TIMEOUT_S, gt=0)


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()
