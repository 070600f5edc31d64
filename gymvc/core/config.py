from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    # Base de datos
    db_url: str = Field("sqlite+aiosqlite:///./gymvc.sqlite3", alias="DB_URL")
    store_timeout_seconds: float = Field(5.0, alias="STORE_TIMEOUT_SECONDS")

    # Identidad del emisor (un único par de claves Ed25519)
    issuer_did: str = Field("did:web:cmcglobal.fitness", alias="ISSUER_DID")
    priv_key_path: str = Field("keys/issuer_private.pem", alias="ISSUER_PRIVATE_KEY_PATH")
    pub_key_path: str = Field("keys/issuer_public.pem", alias="ISSUER_PUBLIC_KEY_PATH")

    # Metadatos del gimnasio que se incrustan en cada credencial
    gym_name: str = Field("CMC Global Fitness Center", alias="GYM_NAME")
    gym_location: str = Field("CMC Global Network", alias="GYM_LOCATION")

    # Tokens de referencia (QR)
    checkin_token_ttl_seconds: int = Field(60, alias="CHECKIN_TOKEN_TTL_SECONDS")
    checkin_deadline_seconds: float = Field(3.0, alias="CHECKIN_DEADLINE_SECONDS")
    checkin_single_use: bool = Field(False, alias="CHECKIN_SINGLE_USE")
    bundle_policy: str = Field("all_or_nothing", alias="BUNDLE_POLICY")

    # Enlaces para compartir
    share_default_hours: int = Field(24, alias="SHARE_DEFAULT_HOURS")
    share_max_hours: int = Field(720, alias="SHARE_MAX_HOURS")
    public_base_url: str = Field("http://127.0.0.1:8000", alias="PUBLIC_BASE_URL")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,  # permite defaults si no hay variable de entorno
    )


settings = Settings()
