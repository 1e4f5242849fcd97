from pydantic_settings import BaseSettings
from pathlib import Path
import os
import yaml


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://postgres@localhost:5432/motoride"
    REDIS_URL: str = "redis://localhost:6379/0"

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = -1
    DB_ECHO: bool = False

    NEARBY_RADIUS_KM: float = 2.0
    RIDE_SWEEP_INTERVAL_SEC: int = 60
    # legacy sweep completed OPEN rides too; off unless explicitly enabled
    SWEEP_COMPLETES_OPEN_RIDES: bool = False

    OTP_TTL_SEC: int = 300
    EXPOSE_OTP: bool = False

    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRES_MIN: int = 60 * 24 * 7

    # per client IP on /api/v1, fixed window
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_MAX_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_SEC: int = 15 * 60

    CORS_ORIGINS: list[str] = ["http://127.0.0.1:5173", "http://localhost:5173"]
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str | None = None

    # Load .env located next to this file (motoride/.env) so defaults are overridden
    model_config = {"env_file": str(Path(__file__).resolve().parent / ".env")}


def load_settings() -> Settings:
    """Load settings from application.yaml and merge with environment variables."""
    config_path = Path(__file__).resolve().parent / "application.yaml"

    config_dict = {}

    if config_path.exists():
        with open(config_path, "r") as f:
            yaml_config = yaml.safe_load(f)
            if yaml_config:
                # Map YAML structure to Settings fields
                if "database" in yaml_config:
                    db = yaml_config["database"]
                    config_dict["DATABASE_URL"] = db.get("url")
                    config_dict["DB_POOL_SIZE"] = db.get("pool_size")
                    config_dict["DB_MAX_OVERFLOW"] = db.get("max_overflow")
                    config_dict["DB_POOL_TIMEOUT"] = db.get("pool_timeout")
                    config_dict["DB_POOL_RECYCLE"] = db.get("pool_recycle")
                    config_dict["DB_ECHO"] = db.get("echo")

                if "redis" in yaml_config:
                    config_dict["REDIS_URL"] = yaml_config["redis"].get("url")

                if "rides" in yaml_config:
                    rides = yaml_config["rides"]
                    config_dict["NEARBY_RADIUS_KM"] = rides.get("nearby_radius_km")
                    config_dict["RIDE_SWEEP_INTERVAL_SEC"] = rides.get("sweep_interval_sec")
                    config_dict["SWEEP_COMPLETES_OPEN_RIDES"] = rides.get("sweep_completes_open_rides")

                if "auth" in yaml_config:
                    auth = yaml_config["auth"]
                    config_dict["OTP_TTL_SEC"] = auth.get("otp_ttl_sec")
                    config_dict["EXPOSE_OTP"] = auth.get("expose_otp")
                    config_dict["JWT_SECRET"] = auth.get("jwt_secret")
                    config_dict["JWT_ALGORITHM"] = auth.get("jwt_algorithm")
                    config_dict["JWT_EXPIRES_MIN"] = auth.get("jwt_expires_min")

                if "rate_limit" in yaml_config:
                    limit = yaml_config["rate_limit"]
                    config_dict["RATE_LIMIT_ENABLED"] = limit.get("enabled")
                    config_dict["RATE_LIMIT_MAX_REQUESTS"] = limit.get("max_requests")
                    config_dict["RATE_LIMIT_WINDOW_SEC"] = limit.get("window_sec")

                if "server" in yaml_config:
                    server = yaml_config["server"]
                    config_dict["CORS_ORIGINS"] = server.get("cors_origins")
                    config_dict["LOG_LEVEL"] = server.get("log_level")
                    config_dict["LOG_FILE"] = server.get("log_file")

    # YAML fills in defaults; a variable set in the environment still wins
    return Settings(**{k: v for k, v in config_dict.items() if v is not None and k not in os.environ})


settings = load_settings()
