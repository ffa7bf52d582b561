from pydantic_settings import BaseSettings

DEFAULT_PERSONA = (
    "你是一个乐于助人的 AI 助手，运行在微信公众号里。"
    "请用简洁、友好的中文回答用户的问题；如果用户使用其他语言，就用相同的语言回答。"
)


class Settings(BaseSettings):
    database_url: str = "sqlite:///./weixin_relay.db"
    debug: bool = False
    log_level: str = "INFO"

    weixin_app_id: str = ""
    weixin_secret: str = ""
    weixin_api_base: str = "https://api.weixin.qq.com/cgi-bin"

    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    chat_model: str = "gpt-3.5-turbo"
    chat_temperature: float = 0.7
    request_timeout_seconds: float = 60.0
    image_generation_enabled: bool = True
    default_persona: str = DEFAULT_PERSONA

    context_window_seconds: int = 180
    context_limit: int = 6
    typing_interval_seconds: float = 15.0
    watchdog_delay_seconds: float = 10.0

    admin_token: str = ""
    token_refresh_enabled: bool = False
    token_refresh_interval_seconds: float = 7000.0

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()


def get_settings() -> Settings:
    return settings
