from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "IPAM Liveness Monitor"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    ALLOWED_ORIGINS: str = "*"
    HTTPS_ONLY: bool = False

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://ipam:ipam@db:5432/ipam"

    # Probing
    PING_TIMEOUT_MS: int = 1000
    PING_CONCURRENCY: int = 254
    PING_TCP_FALLBACK: bool = False
    PING_TCP_PORTS: str = "22,80,443,445,3389,135,139,21,23,3306,5432,1433,8080"
    ARP_LOOKUP_ENABLED: bool = True

    # Bootstrap sweep of a /24 (.1 - .254)
    SWEEP_TIMEOUT_MS: int = 1000

    # Address space
    MAX_SEGMENT_HOSTS: int = 4094  # /20

    # Monitoring loop
    FULL_SCAN_INTERVAL_SECONDS: int = 300  # 0 = disabled
    MONITOR_AUTOSTART_SEGMENT_ID: Optional[int] = None

    @property
    def tcp_probe_ports(self) -> List[int]:
        return [int(p) for p in self.PING_TCP_PORTS.split(",") if p.strip()]

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
