# app/core/config.py
import os
from typing import List, Optional
from pydantic import BaseModel
from dotenv import load_dotenv
from urllib.parse import quote_plus

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class Settings(BaseModel):
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "Hospital Warehouse Requisitions")
    API_V1_STR: str = os.getenv("API_V1_STR", "/api")

    # Document number prefix (REQ / DN / RCV numbers)
    ORG_CODE: str = os.getenv("ORG_CODE", "NH")

    # CORS (env takes priority)
    BACKEND_CORS_ORIGINS: List[str] = _split_csv(
        os.getenv(
            "CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ))

    # ---------- MySQL (shared creds) ----------
    MYSQL_HOST: str = os.getenv("MYSQL_HOST", "localhost")
    MYSQL_PORT: int = int(os.getenv("MYSQL_PORT", "3306"))
    MYSQL_USER: str = os.getenv("MYSQL_USER", "requisition_user")
    MYSQL_PASSWORD: str = os.getenv("MYSQL_PASSWORD", "")
    MYSQL_DB: str = os.getenv("MYSQL_DB", "hospital_requisitions")
    DB_DRIVER: str = os.getenv("DB_DRIVER", "pymysql")

    # Single-database override (sqlite for local runs / tests).
    # When set, every tenant resolves to this URL.
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL") or None

    # Tenant DB naming: one database per hospital
    TENANT_DB_NAME_PREFIX: str = os.getenv("TENANT_DB_NAME_PREFIX", "hospital_req_")

    def mysql_uri(self, db_name: str) -> str:
        return (
            f"mysql+{self.DB_DRIVER}://{quote_plus(self.MYSQL_USER)}:{quote_plus(self.MYSQL_PASSWORD)}"
            f"@{self.MYSQL_HOST}:{self.MYSQL_PORT}/{db_name}?charset=utf8mb4")

    def make_tenant_db_uri(self, tenant_code: str) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return self.mysql_uri(f"{self.TENANT_DB_NAME_PREFIX}{tenant_code}")

    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        return self.DATABASE_URL or self.mysql_uri(self.MYSQL_DB)

    # ---------- Security ----------
    JWT_SECRET: str = os.getenv("JWT_SECRET", "change-this")
    JWT_ALG: str = os.getenv("JWT_ALG", "HS256")

    # ---------- Stock ledger ----------
    LEDGER_MAX_ATTEMPTS: int = int(os.getenv("LEDGER_MAX_ATTEMPTS", "3"))
    LEDGER_RETRY_BACKOFF_SECONDS: float = float(
        os.getenv("LEDGER_RETRY_BACKOFF_SECONDS", "0.2") or 0.0)

    # ---------- Audit ----------
    AUDIT_ENABLED: bool = _flag("AUDIT_ENABLED", "true")

    # ---------- Logging ----------
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
