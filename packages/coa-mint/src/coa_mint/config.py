"""Canonical configuration surface for coa-mint.

Settings load from environment variables prefixed ``COA_`` (nested fields use
``__``, e.g. ``COA_CHAIN__RPC_URL``) and from a local ``.env`` file. The
signing key is required configuration: a missing or malformed key is a
startup error, never something looked up lazily at mint time.
"""
from __future__ import annotations

import re
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from web3 import Web3

from .exceptions import ConfigurationError

_PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def _checksum_or_empty(value: str) -> str:
    if not value:
        return ""
    if not Web3.is_address(value):
        raise ValueError(f"not an EVM address: {value}")
    return Web3.to_checksum_address(value)


class ChainSettings(BaseModel):
    """Target chain and contract."""
    name: str = "blockticity-l1"
    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: int = 28530
    contract_address: str = ""
    mint_to: str = ""
    rpc_timeout_seconds: float = 30.0

    @field_validator("contract_address", "mint_to")
    @classmethod
    def normalize_addresses(cls, value: str) -> str:
        return _checksum_or_empty(value)


class StorageSettings(BaseModel):
    """Artifact object storage (S3)."""
    bucket: str = "blockticity-coa-uploads"
    region: str = "us-east-1"
    profile: Optional[str] = None
    cache_control: str = "no-cache, no-store, must-revalidate"


class MintSettings(BaseModel):
    """Batch-mint tuning."""
    batch_size: int = Field(default=10, ge=1)
    upload_concurrency: int = Field(default=5, ge=1)
    gas_multiplier: float = Field(default=2.0, ge=1.0)
    receipt_timeout_seconds: float = Field(default=60.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=5.0, ge=0)
    poll_interval_seconds: float = Field(default=2.0, gt=0)


class IssuerSettings(BaseModel):
    """Issuer identity and display strings embedded in token metadata."""
    name: str = "Blockticity"
    address: str = ""
    product_name: str = "NuCafe Green Coffee"
    network_name: str = "Blockticity L1"
    standard: str = "ASTM D8558"
    external_url_base: str = "https://app.blockticity.ai"


class CoaSettings(BaseSettings):
    """Main coa-mint configuration."""

    model_config = SettingsConfigDict(
        env_prefix="COA_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    environment: str = "dev"
    log_level: str = "INFO"
    audit_log_path: Optional[str] = None

    private_key: Optional[SecretStr] = None

    chain: ChainSettings = Field(default_factory=ChainSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    mint: MintSettings = Field(default_factory=MintSettings)
    issuer: IssuerSettings = Field(default_factory=IssuerSettings)

    def require_private_key(self) -> str:
        """Return the signing key, or raise ConfigurationError."""
        if self.private_key is None or not self.private_key.get_secret_value():
            raise ConfigurationError(
                "Signing key not configured (set COA_PRIVATE_KEY)",
                setting="private_key",
            )
        key = self.private_key.get_secret_value().strip()
        if not _PRIVATE_KEY_RE.match(key):
            raise ConfigurationError(
                "Signing key must be 32 bytes of hex", setting="private_key"
            )
        return key if key.startswith("0x") else "0x" + key

    def require_contract(self) -> str:
        if not self.chain.contract_address:
            raise ConfigurationError(
                "Contract address not configured (set COA_CHAIN__CONTRACT_ADDRESS)",
                setting="chain.contract_address",
            )
        return self.chain.contract_address

    def require_mint_to(self) -> str:
        if not self.chain.mint_to:
            raise ConfigurationError(
                "Mint recipient not configured (set COA_CHAIN__MINT_TO)",
                setting="chain.mint_to",
            )
        return self.chain.mint_to


@lru_cache
def get_settings() -> CoaSettings:
    return CoaSettings()
