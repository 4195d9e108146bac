# src/waku_chat/schemas/identity.py
"""Local user identity schema."""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Identity(BaseModel):
    """Key pair of the local user plus the public identifier derived from it."""

    public_id: str = Field(..., description="Address-style identifier derived from the public key")
    private_key: str = Field(..., description="Hex-encoded raw Ed25519 private key")
    public_key: str = Field(..., description="Hex-encoded raw Ed25519 public key")

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )
