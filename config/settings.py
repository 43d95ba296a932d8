"""
Oracle — Configuration
All secrets loaded from environment variables.
Copy .env.example → .env and fill in your credentials.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dotenv import load_dotenv

# Load .env before any os.getenv() calls in dataclass defaults
_ENV_PATH = Path(__file__).parent / ".env"
load_dotenv(_ENV_PATH, override=True)


@dataclass
class GatewayConfig:
    api_key: str = os.getenv("ANTHROPIC_API_KEY", "")
    default_model: str = os.getenv("ORACLE_MODEL", "claude-sonnet-4-5-20250929")
    max_output_tokens: int = int(os.getenv("ORACLE_MAX_OUTPUT_TOKENS", "4096"))
    timeout: float = float(os.getenv("ORACLE_GATEWAY_TIMEOUT", "120"))
    # Models the player can pick from in settings
    models: List[str] = field(default_factory=lambda: [
        "claude-sonnet-4-5-20250929",
        "claude-haiku-4-5-20251001",
        "claude-opus-4-6",
    ])


@dataclass
class AccountServiceConfig:
    # Profile + quota endpoint of the linked gateway accounts
    base_url: str = os.getenv("ACCOUNT_SERVICE_URL", "")
    timeout: float = float(os.getenv("ACCOUNT_SERVICE_TIMEOUT", "15"))
    default_tokens_limit: int = int(os.getenv("ORACLE_DEFAULT_TOKEN_LIMIT", "100000"))


@dataclass
class PostgresConfig:
    host: str = os.getenv("POSTGRES_HOST", "localhost")
    port: int = int(os.getenv("POSTGRES_PORT", "5432"))
    database: str = os.getenv("POSTGRES_DB", "oracle")
    user: str = os.getenv("POSTGRES_USER", "oracle")
    password: str = os.getenv("POSTGRES_PASSWORD", "")
    sslmode: str = os.getenv("POSTGRES_SSLMODE", "prefer")

    @property
    def dsn_params(self) -> dict:
        """Return connection params dict for psycopg2."""
        params = {
            "host": self.host,
            "port": self.port,
            "dbname": self.database,
            "user": self.user,
            "password": self.password,
        }
        if self.sslmode and self.sslmode != "disable":
            params["sslmode"] = self.sslmode
        return params


@dataclass
class StorageConfig:
    # "postgres" for the shared kv_documents table, "memory" for a throwaway store
    backend: str = os.getenv("ORACLE_STORAGE", "postgres").lower()
    table: str = "kv_documents"
    accounts_key: str = "oracle_accounts"
    history_limit: int = 100


@dataclass
class KnowledgeConfig:
    strategy_path: str = os.getenv(
        "STRATEGY_KNOWLEDGE_PATH",
        str(Path(__file__).resolve().parent.parent / "data" / "strategy_knowledge.md"),
    )
    # Language the Oracle answers in
    response_language: str = os.getenv("ORACLE_LANGUAGE", "French")


@dataclass
class OutputConfig:
    api_key: str = os.getenv("ORACLE_API_KEY", "")
    allowed_origins: str = os.getenv("ALLOWED_ORIGINS", "http://localhost:8080")
    max_upload_bytes: int = 10_485_760  # 10 MB


@dataclass
class OracleConfig:
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    accounts: AccountServiceConfig = field(default_factory=AccountServiceConfig)
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    knowledge: KnowledgeConfig = field(default_factory=KnowledgeConfig)
    outputs: OutputConfig = field(default_factory=OutputConfig)
    debug: bool = os.getenv("ORACLE_DEBUG", "false").lower() == "true"


# Global config instance
config = OracleConfig()
