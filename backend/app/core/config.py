from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    PROJECT_NAME: str = "Ask Engine"
    API_V1_STR: str = "/api/v1"
    APP_URL: str = "http://localhost:3000"

    # ArangoDB
    ARANGO_HOST: str = "http://localhost:8529"
    ARANGO_USERNAME: str = "root"
    ARANGO_PASSWORD: str = "test"
    ARANGO_DB_NAME: str = "ask_engine"

    # LLM
    OPEN_ROUTER_API_KEY: str = ""
    LLM_BASE_URL: str = "https://openrouter.ai/api/v1"
    LLM_MODEL: str = "openai/gpt-4-turbo-preview"
    LLM_RATE_CAPACITY: int = 5
    LLM_RATE_REFILL: float = 0.5

    # Principal verification
    SUPABASE_URL: str = ""
    SUPABASE_PUBLISHABLE_KEY: str = ""

    # Google OAuth (token refresh only)
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"

    # Feature flag defaults (overridable per user and per request)
    FF_ENABLE_LINKEDIN: bool = False
    FF_ENABLE_WHATSAPP: bool = False
    FF_ENABLE_MAIL: bool = True
    FF_ENABLE_ASYNC_MODE: bool = False
    FF_CACHE_TTL_SECONDS: int = 60

    # Connectors
    MAIL_RECENCY_DAYS: int = 180
    MAIL_MAX_RESULTS: int = 10
    CALENDAR_MAX_RESULTS: int = 20
    CALENDAR_DEFAULT_WINDOW_DAYS: int = 7
    CONNECTOR_TIMEOUT_SECONDS: float = 15.0
    ARCHIVE_MATCH_LIMIT: int = 50
    ARCHIVE_THREAD_LIMIT: int = 3
    ARCHIVE_CONTEXT_WINDOW: int = 100

    # Pending searches
    PENDING_GRACE_SECONDS: int = 30
    PENDING_ABANDON_SECONDS: int = 300
    PENDING_SWEEP_INTERVAL_SECONDS: int = 60

    # Conversations
    CONVERSATION_TTL_SECONDS: int = 600
    PLANNER_HISTORY_MESSAGES: int = 6

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_PRETTY: bool = False


    class Config:
        env_file = ".env"

settings = Settings()
