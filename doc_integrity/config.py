"""
config.py - Cấu hình tập trung (environment / .env, prefix MYVAULT_)
"""
from dataclasses import dataclass
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


# Hardhat Account #0, only for local development
DEV_SIGNER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"


@dataclass(frozen=True)
class RegistryConfig:
    """Everything the ledger adapter needs, passed explicitly"""
    endpoint: str
    signer_key: str
    contract_address: str
    gas_limit: int = 300000

    def __repr__(self) -> str:
        return (
            f"RegistryConfig(endpoint={self.endpoint!r}, "
            f"contract_address={self.contract_address!r}, signer_key='***')"
        )


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MYVAULT_",
        env_file=".env",
        extra="ignore",
    )

    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Ledger
    LEDGER_BACKEND: str = "memory"  # memory | web3
    RPC_URL: str = "http://127.0.0.1:8545"
    SIGNER_PRIVATE_KEY: str = DEV_SIGNER_KEY
    CONTRACT_ADDRESS: str = ""
    GAS_LIMIT: int = 300000

    # Ledger call policy
    LEDGER_TIMEOUT_SECONDS: float = 10.0
    LEDGER_MAX_RETRIES: int = 3
    LEDGER_BACKOFF_SECONDS: float = 0.5

    # Bearer tokens
    JWT_SECRET: str = "dev-secret-change-me-at-least-32-bytes"
    JWT_ALGORITHM: str = "HS256"
    TOKEN_TTL_MINUTES: int = 60

    # Disclosure
    VERIFY_BASE_URL: str = "https://myvault-verify.vercel.app/verify"

    def registry_config(self) -> RegistryConfig:
        return RegistryConfig(
            endpoint=self.RPC_URL,
            signer_key=self.SIGNER_PRIVATE_KEY,
            contract_address=self.CONTRACT_ADDRESS,
            gas_limit=self.GAS_LIMIT,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
