"""Configuration for the ceremony core."""

from __future__ import annotations

from typing import List, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CHALLENGE_TTL_MS = 5 * 60 * 1000


class CeremonySettings(BaseSettings):
    """Runtime settings for the relying party ceremonies.

    Exactly one of ``challenge_store_path`` (stateful) or ``sealing_keys``
    (stateless) selects how challenges survive between begin and complete.
    """

    model_config = SettingsConfigDict(env_prefix="RP_CEREMONY_")

    rp_id: str = Field(default="localhost", description="Relying Party identifier")
    rp_name: str = Field(default="PQ RP Server", description="Human readable RP name")
    allowed_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:3000"],
        description="Origins accepted in clientDataJSON",
    )
    hosted_algorithms: List[int] = Field(
        default_factory=lambda: [-49, -48, -50],
        description="COSE algorithm identifiers the RP will accept",
    )
    challenge_ttl_ms: int = Field(
        default=DEFAULT_CHALLENGE_TTL_MS,
        description="Lifetime of an issued challenge in milliseconds",
    )
    challenge_store_path: Optional[str] = Field(
        default=None,
        description="JSON file holding pending challenges (stateful mode)",
    )
    sealing_keys: List[SecretStr] = Field(
        default_factory=list,
        description="Secrets for stateless challenge tokens, newest first",
    )
    credential_store_path: Optional[str] = Field(
        default=None,
        description="JSON file holding registered credentials; memory when unset",
    )
