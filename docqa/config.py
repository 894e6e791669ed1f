
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    ALLOWED_ORIGINS: str = "*"

    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "docqa"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = "postgres"
    # In-memory document/vector stores instead of Postgres
    SKIP_DB: bool = False

    # LLM provider selection: "openai" or "perplexity"
    LLM_PROVIDER: str = "openai"
    LLM_TEMPERATURE: float = 0.7
    LLM_MAX_TOKENS: int = 1000

    # Perplexity (chat) settings
    PERPLEXITY_API_KEY: str = ""
    PERPLEXITY_MODEL: str = "sonar"
    LLM_PREFER_CHEAPEST: bool = False

    # OpenAI (chat and embeddings)
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_EMBED_MODEL: str = "text-embedding-3-small"

    # Embedding provider selection: "openai" or "cloudflare"
    EMBED_PROVIDER: str = "openai"
    CF_ACCOUNT_ID: str = ""
    CF_API_TOKEN: str = ""
    CF_EMBED_MODEL: str = "@cf/baai/bge-base-en-v1.5"
    EMBED_DIM: int = 1536
    EMBED_MAX_RETRIES: int = 5
    EMBED_BATCH_SIZE: int = 100
    EMBED_BATCH_DELAY: float = 0.5
    EMBED_CACHE_SIZE: int = 10_000

    CHUNK_MAX_TOKENS: int = 512
    CHUNK_OVERLAP_PERCENT: int = 20
    TOKENIZER_MODEL: str = "gpt-4"

    PDF_MAX_SIZE: int = 10 * 1024 * 1024
    MAX_DOCUMENTS_PER_OWNER: int = 5

    SEARCH_MIN_SIMILARITY: float = 0.3
    SEARCH_MAX_TOP_K: int = 10
    INSERT_BATCH_SIZE: int = 50

    # Raw file storage: "local" or "s3" (S3-compatible, e.g. Cloudflare R2)
    STORAGE_BACKEND: str = "local"
    STORAGE_DIR: str = "./object_store"
    S3_BUCKET: str = "docqa-pdfs"
    S3_ENDPOINT: str = ""
    S3_ACCESS_KEY_ID: str = ""
    S3_SECRET_ACCESS_KEY: str = ""

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

settings = Settings()
