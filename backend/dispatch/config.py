import logging
import logging.handlers
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "postgresql://cityping:cityping@db:5432/cityping"
    environment: str = "production"

    # Shared secret presented by the cron provider on every job trigger
    cron_secret: str = ""

    # SMTP transport (password may be a Fernet token, see notifications.transport)
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = Field(587, gt=0)
    smtp_user: str = ""
    smtp_password: str = ""
    sender_name: str = "CityPing"
    sender_address: str = "alerts@cityping.net"
    secret_key: str = "change-me"

    # Operator alerts
    admin_alert_email: str = ""
    alert_cooldown_hours: int = Field(4, ge=1)

    # Scheduling
    timezone: str = "America/New_York"
    lease_ttl_minutes: int = Field(30, ge=1)
    outbox_pending_grace_minutes: int = Field(60, ge=1)
    job_max_runtime_minutes: int = Field(45, ge=1)
    run_migrations: bool = True

    # Rate limits (slowapi syntax)
    rate_limit_jobs: str = "30/minute"

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_max_bytes: int = 10_485_760  # 10 MB
    log_backup_count: int = 5

    model_config = {"env_file": ".env"}

    @property
    def effective_database_url(self) -> str:
        # Pin the psycopg2 driver; Heroku-style URLs still use the deprecated scheme
        for scheme in ("postgres://", "postgresql://"):
            if self.database_url.startswith(scheme):
                return "postgresql+psycopg2://" + self.database_url[len(scheme):]
        return self.database_url

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


settings = Settings()

def _rotating_handler(path: Path, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging() -> None:
    """Configure application-wide logging.

    Console always gets INFO+ (cron platforms collect stdout). When LOG_DIR is
    set, app.log (DEBUG+) and error.log (ERROR+) are written as rotating files.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    ))
    root.addHandler(console)

    log_dir = Path(settings.log_dir) if settings.log_dir else None
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        detail_fmt = logging.Formatter(
            "%(asctime)s %(levelname)-8s [%(name)s:%(funcName)s:%(lineno)d] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        root.addHandler(_rotating_handler(log_dir / "app.log", logging.DEBUG, detail_fmt))
        root.addHandler(_rotating_handler(log_dir / "error.log", logging.ERROR, detail_fmt))

    # SQL echo and per-request access lines drown out job logs
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "alembic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured: level=%s, files=%s", settings.log_level, log_dir or "disabled"
    )
