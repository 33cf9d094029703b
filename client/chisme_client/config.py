from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    API_URL: str = "http://localhost:3000"
    WS_URL: str = "ws://localhost:3000/ws"
    LOG_LEVEL: str = "INFO"

    # Logical server / guild the session is scoped to ("default" on single-tenant hosts)
    SERVER_ID: str = "default"
    AUTH_TOKEN: str = ""

    HTTP_TIMEOUT: float = 10.0
    HANDSHAKE_TIMEOUT: float = 10.0
    HEARTBEAT_INTERVAL: float = 30.0

    # Reconnect backoff: exponential with jitter, reset on every successful connect
    RECONNECT_MIN_DELAY: float = 1.0
    RECONNECT_MAX_DELAY: float = 30.0
    RECONNECT_JITTER: float = 0.25

    # Typing indicators. TTL must exceed the resend interval or a steady
    # typist flickers between resends
    TYPING_TTL: float = 10.0
    TYPING_RESEND_INTERVAL: float = 5.0
    TYPING_SWEEP_INTERVAL: float = 2.0

    MESSAGES_PER_PAGE: int = 50
    MAX_MESSAGE_LENGTH: int = 2000
    MAX_SIGNAL_LENGTH: int = 65_536
    MAX_TIMEOUT_SECONDS: int = 60 * 60 * 24 * 7

    model_config = {"env_file": ".env"}


settings = Settings()
