from typing import Any, Dict, List, Union
from pydantic import AnyHttpUrl, validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "LearnFlow API"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./learnflow.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379"

    # Backend selection
    COUNTER_STORE_BACKEND: str = "memory"  # memory, redis
    JOB_REGISTRY_BACKEND: str = "memory"   # memory, sql

    # CORS
    BACKEND_CORS_ORIGINS: List[AnyHttpUrl] = []

    @validator("BACKEND_CORS_ORIGINS", pre=True)
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    @validator("COUNTER_STORE_BACKEND")
    def check_counter_backend(cls, v: str) -> str:
        if v not in ("memory", "redis"):
            raise ValueError(f"Unsupported counter store backend: {v}")
        return v

    @validator("JOB_REGISTRY_BACKEND")
    def check_registry_backend(cls, v: str) -> str:
        if v not in ("memory", "sql"):
            raise ValueError(f"Unsupported job registry backend: {v}")
        return v

    # Rate limit presets, in the string notation understood by `limits`
    RATE_LIMITS: Dict[str, str] = {
        "strict": "5 per 15 minutes",
        "moderate": "100 per 15 minutes",
        "lenient": "1000 per 15 minutes",
        "per_user": "1000/hour",
        "per_endpoint": "60/minute",
        "upload": "10 per 5 minutes",
        "video_processing": "20/hour",
        "video_processing_ip": "10/hour",
        "create_share": "50/hour",
        "public_access": "200 per 5 minutes",
        "plan_change": "3/day",
        "plan_change_ip": "5/hour",
    }
    RATE_LIMIT_WARNING_RATIO: float = 0.8

    # Honour X-User-Id forwarded by an authenticating gateway. Only enable
    # when clients cannot reach the service directly.
    TRUST_USER_HEADER: bool = False

    # Same user resubmitting the same video
    VIDEO_COOLDOWN_MINUTES: int = 60

    # Quota plans, partial overrides merged over the built-in tiers
    # e.g. {"free": {"video_processing": 5}}
    QUOTA_PLAN_OVERRIDES: Dict[str, Dict[str, Any]] = {}
    QUOTA_ALERT_WARNING_RATIO: float = 0.8
    QUOTA_ALERT_DEDUP_HOURS: int = 24
    QUOTA_LOG_RETENTION_DAYS: int = 90

    # Video processing pipeline
    STEP_TIMEOUTS: Dict[str, float] = {
        "extract_info": 30,
        "extract_audio": 120,
        "transcribe": 300,
        "analyze_content": 300,
        "generate_knowledge_graph": 180,
        "finalize": 30,
    }
    DEFAULT_STEP_TIMEOUT: float = 120
    PROCESSING_WORKER_URL: str = "http://localhost:8001"
    WORKER_REQUEST_TIMEOUT: int = 60
    WORKER_MAX_RETRIES: int = 3

    # Job retention
    JOB_RESULT_TTL_HOURS: int = 24
    JOB_RETENTION_DAYS: int = 30

    # Admin
    ADMIN_API_KEY: str = ""

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
