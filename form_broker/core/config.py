"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.01.00"
    LOG_LEVEL: str = "INFO"

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Record store OAuth (Connected App)
    SALESFORCE_CLIENT_ID: str = ""
    SALESFORCE_CLIENT_SECRET: str = ""
    SALESFORCE_LOGIN_URL: str = "https://login.salesforce.com"
    SALESFORCE_REDIRECT_URI: str = "http://localhost:3001/oauth/callback"
    SALESFORCE_API_VERSION: str = "58.0"

    # Context id used when completing OAuth for the shared service account
    SERVICE_ACCOUNT_CONTEXT_ID: str = "service_account"

    # Record store object names
    FORM_DEFINITION_OBJECT: str = "Form_Definition__c"
    TRACKING_OBJECT: str = "Form_Submission__c"
    RELATIONSHIP_OBJECT: str = "Form_Submission_Relationship__c"

    # Token sessions (persisted JSON collection)
    TOKEN_STORAGE_PATH: str = "data/oauth-sessions.json"
    TOKEN_ENCRYPTION_KEY: str = ""  # Fernet key; tokens stored in plain text when empty
    TOKEN_REFRESH_BUFFER_SECONDS: int = 300
    TOKEN_SESSION_MAX_AGE_HOURS: int = 24

    # Form sessions
    SESSION_TTL_HOURS: int = 24

    # Cleanup sweeps (sessions, token sessions, audit rows)
    SWEEP_INTERVAL_SECONDS: int = 3600

    # Audit store
    AUDIT_DATABASE_URL: str = "sqlite:///./data/broker-logs.db"
    AUDIT_RETENTION_HOURS: int = 24

    # Outbound HTTP
    HTTP_TIMEOUT_SECONDS: float = 15.0
    HTTP_CONNECT_TIMEOUT_SECONDS: float = 5.0
    HTTP_MAX_ATTEMPTS: int = 3

    # Only trust X-Forwarded-For behind a reverse proxy
    TRUST_PROXY_HEADERS: bool = False

    @property
    def token_endpoint(self) -> str:
        return f"{self.SALESFORCE_LOGIN_URL.rstrip('/')}/services/oauth2/token"

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.SALESFORCE_LOGIN_URL.rstrip('/')}/services/oauth2/authorize"

    @property
    def oauth_configured(self) -> bool:
        """True when client credentials for token exchange are present."""
        return bool(self.SALESFORCE_CLIENT_ID and self.SALESFORCE_CLIENT_SECRET)


settings = Settings()
