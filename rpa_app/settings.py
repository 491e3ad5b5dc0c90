import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional


DEFAULT_PROXY_SOURCES = (
    "https://proxylist.geonode.com/api/proxy-list?country=SG&limit=100&page=1&sort_by=lastChecked&sort_type=desc",
    "https://www.proxy-list.download/api/v2/get?l=en&t=http&c=SG",
)


def _env_flag(name: str, default: str = "0") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str = "") -> list[str]:
    raw = os.getenv(name, default) or ""
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass
class PortalCredentials:
    url: str
    username: str
    password: str

    @property
    def configured(self) -> bool:
        return bool(self.url and self.username and self.password)


@dataclass
class AppConfig:
    database_url: str
    jwt_secret_key: str
    jwt_access_minutes: int
    admin_username: str
    admin_password: str
    log_level: str
    log_file: Optional[str]
    source: PortalCredentials
    mhc: PortalCredentials
    allianz: PortalCredentials
    proxy_mode: str = "off"  # off | manual | auto
    proxy_server: Optional[str] = None
    proxy_username: Optional[str] = None
    proxy_password: Optional[str] = None
    proxy_country: str = "SG"
    proxy_max_attempts: int = 3
    proxy_sources: list[str] = field(default_factory=lambda: list(DEFAULT_PROXY_SOURCES))
    proxy_check_url: str = "https://ipinfo.io/json"
    headless: bool = True
    page_timeout_seconds: int = 30
    step_delay_seconds: float = 1.0
    item_delay_seconds: float = 1.0
    claim_delay_seconds: float = 2.0
    batch_size: int = 100
    max_retries: int = 3
    amount_min: float = 0.0
    amount_max: float = 100000.0
    final_submit: bool = False
    diagnosis_min_confidence: float = 0.5
    accepted_exceptions: list[str] = field(default_factory=list)

    def portal_credentials(self, family: str) -> PortalCredentials:
        creds = {"source": self.source, "mhc": self.mhc, "allianz": self.allianz}.get(family)
        if creds is None:
            raise KeyError(f"no credentials configured for portal family: {family}")
        return creds

    @staticmethod
    def from_env() -> "AppConfig":
        # Build an absolute default path to instance/rpa.db next to this package
        pkg_root = Path(__file__).resolve().parent.parent
        default_sqlite_path = pkg_root / "instance" / "rpa.db"
        default_sqlite_url = f"sqlite:///{default_sqlite_path}"
        proxy_server = os.getenv("RPA_PROXY_SERVER") or None
        return AppConfig(
            database_url=os.getenv("DATABASE_URL", default_sqlite_url),
            jwt_secret_key=os.getenv("JWT_SECRET_KEY", "change-me"),
            jwt_access_minutes=int(os.getenv("JWT_ACCESS_MINUTES", "720")),
            admin_username=os.getenv("RPA_ADMIN_USERNAME", "admin"),
            admin_password=os.getenv("RPA_ADMIN_PASSWORD", "admin12345"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("RPA_LOG_FILE") or None,
            source=PortalCredentials(
                url=os.getenv("CLINIC_ASSIST_URL", ""),
                username=os.getenv("CLINIC_ASSIST_USERNAME", ""),
                password=os.getenv("CLINIC_ASSIST_PASSWORD", ""),
            ),
            mhc=PortalCredentials(
                url=os.getenv("MHC_ASIA_URL", "https://www.mhcasia.net/mhc/"),
                username=os.getenv("MHC_ASIA_USERNAME", ""),
                password=os.getenv("MHC_ASIA_PASSWORD", ""),
            ),
            allianz=PortalCredentials(
                url=os.getenv("ALLIANZ_URL", ""),
                username=os.getenv("ALLIANZ_USERNAME", ""),
                password=os.getenv("ALLIANZ_PASSWORD", ""),
            ),
            # An explicit server always wins over the configured mode
            proxy_mode="manual" if proxy_server else os.getenv("RPA_PROXY_MODE", "off").lower(),
            proxy_server=proxy_server,
            proxy_username=os.getenv("RPA_PROXY_USERNAME") or None,
            proxy_password=os.getenv("RPA_PROXY_PASSWORD") or None,
            proxy_country=os.getenv("RPA_PROXY_COUNTRY", "SG").upper(),
            proxy_max_attempts=int(os.getenv("RPA_PROXY_MAX_ATTEMPTS", "3")),
            proxy_sources=_env_list("RPA_PROXY_SOURCES", ",".join(DEFAULT_PROXY_SOURCES)),
            proxy_check_url=os.getenv("RPA_PROXY_CHECK_URL", "https://ipinfo.io/json"),
            headless=_env_flag("RPA_HEADLESS", "1"),
            page_timeout_seconds=int(os.getenv("RPA_PAGE_TIMEOUT", "30")),
            step_delay_seconds=float(os.getenv("RPA_STEP_DELAY", "1.0")),
            item_delay_seconds=float(os.getenv("RPA_ITEM_DELAY", "1.0")),
            claim_delay_seconds=float(os.getenv("RPA_CLAIM_DELAY", "2.0")),
            batch_size=int(os.getenv("VISIT_DETAILS_BATCH_SIZE", "100")),
            max_retries=int(os.getenv("VISIT_DETAILS_MAX_RETRIES", "3")),
            amount_min=float(os.getenv("RPA_AMOUNT_MIN", "0")),
            amount_max=float(os.getenv("RPA_AMOUNT_MAX", "100000")),
            final_submit=_env_flag("RPA_FINAL_SUBMIT"),
            diagnosis_min_confidence=float(os.getenv("RPA_DIAGNOSIS_MIN_CONFIDENCE", "0.5")),
            accepted_exceptions=[v.upper() for v in _env_list("RPA_RECONCILE_ACCEPTED_EXCEPTIONS")],
        )
