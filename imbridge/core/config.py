from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class DingtalkConfig(BaseModel):
    client_id: str
    client_secret: str
    robot_code: Optional[str] = None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    # Core
    APP_NAME: str = "imbridge"
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    # Admin
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD: str = "change-me"

    # CORS
    CORS_ORIGINS: List[str] = ["*"]

    # DingTalk Stream
    DINGTALK_ENABLED: bool = True
    DINGTALK_CLIENT_ID: Optional[str] = None
    DINGTALK_CLIENT_SECRET: Optional[str] = None
    DINGTALK_ROBOT_CODE: Optional[str] = None
    DINGTALK_ACCOUNT_ID: str = "default"

    # Dedup
    DEDUP_CACHE_MAX_SIZE: int = 10000
    DEDUP_CACHE_TTL_SECONDS: int = 300

    # WeChat Work
    WEWORK_CORP_ID: Optional[str] = None
    WEWORK_AGENT_ID: Optional[str] = None
    WEWORK_SECRET: Optional[str] = None
    WEWORK_TOKEN: Optional[str] = None
    WEWORK_ENCODING_AES_KEY: Optional[str] = None

    # Downstream pipeline
    INBOUND_URL: Optional[str] = None
    INBOUND_TIMEOUT: float = 60.0

    SHUTDOWN_TIMEOUT: float = 10.0

    def dingtalk_config(self) -> Optional[DingtalkConfig]:
        """DingTalk credentials, or None when the channel is not configured."""
        if not self.DINGTALK_CLIENT_ID and not self.DINGTALK_CLIENT_SECRET:
            return None
        return DingtalkConfig(
            client_id=self.DINGTALK_CLIENT_ID or "",
            client_secret=self.DINGTALK_CLIENT_SECRET or "",
            robot_code=self.DINGTALK_ROBOT_CODE,
        )


settings = Settings()
