from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "File-Rocket 文件闪传"
    APP_VERSION: str = "4.0.0"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    API_PREFIX: str = "/api"
    ALLOWED_ORIGINS: list = ["*"]

    # 服务器存储模式的元数据库
    DATABASE_URL: str = "sqlite:///./file_rocket.db"

    # Redis（可选，用于统计计数和限流）
    REDIS_ENABLED: bool = False
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""

    # 功能开关（三种传输模式）
    FEATURE_MEMORY_STREAMING: bool = True
    FEATURE_SERVER_STORAGE: bool = False
    FEATURE_P2P_DIRECT: bool = True

    # 服务器存储
    STORAGE_UPLOAD_DIR: str = "./files"
    FILE_RETENTION_HOURS: int = 24
    DELETE_ON_DOWNLOAD: bool = False
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024 * 1024

    # 会话生命周期
    SESSION_MAX_AGE_SECONDS: int = 30 * 60
    SESSION_SWEEP_INTERVAL_SECONDS: int = 5 * 60
    ORPHAN_FILE_AGE_SECONDS: int = 10 * 60
    RELAY_COMPLETE_GRACE_SECONDS: float = 2.0
    P2P_COMPLETE_GRACE_SECONDS: float = 5.0

    # 中转流控与进度
    RELAY_HIGH_WATER_MARK: int = 1024 * 1024
    PROGRESS_THROTTLE_SECONDS: float = 0.1
    NAT_PROBE_TIMEOUT_SECONDS: int = 5

    # 限流（滑动窗口）
    CODE_CREATE_LIMIT: int = 20
    CODE_CREATE_WINDOW_SECONDS: int = 60
    CODE_ATTEMPT_LIMIT: int = 10
    CODE_ATTEMPT_WINDOW_SECONDS: int = 60

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
