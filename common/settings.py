import os
from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    jwt_issuer: str = os.getenv("JWT_ISSUER", "payout-allocation")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))

    # Full SQLAlchemy URL; when unset the MySQL parts below are used
    database_url: Optional[str] = os.getenv("DATABASE_URL")
    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "operations")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))

    db_pool_size: int = int(os.getenv("DB_POOL_SIZE", "20"))
    db_max_overflow: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    db_echo: bool = os.getenv("DB_ECHO", "false").lower() == "true"
    sqlite_busy_timeout: float = float(os.getenv("SQLITE_BUSY_TIMEOUT", "30"))
    auto_create_schema: bool = os.getenv("AUTO_CREATE_SCHEMA", "false").lower() == "true"

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"mysql+pymysql://{self.mysql_user}:{self.mysql_password}@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"

settings = Settings()
