from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Upstream API (override via env)
    UPSTREAM_BASE_URL: str = "https://api.discogs.com"
    USER_AGENT: str = "vinylcache/0.3 +https://github.com/vinylcache"
    REQUEST_TIMEOUT: float = 10.0
    MAX_RETRIES: int = 5
    CONSUMER_KEY: str = ""
    CONSUMER_SECRET: str = ""

    # Cache store: Redis when REDIS_URL is set, per-process memory otherwise
    REDIS_URL: str = ""
    CACHE_KEY_PREFIX: str = "vinylcache:"
    MEMORY_CACHE_MAX: int = 4096

    # Category default TTLs (seconds)
    TTL_RELEASES: int = 24 * 60 * 60  # published releases never change
    TTL_SEARCHES: int = 15 * 60
    TTL_COLLECTIONS: int = 30 * 60
    TTL_STATS: int = 60 * 60
    TTL_USER_PROFILES: int = 60 * 60

    # Per-call overrides
    COLLECTION_BROWSE_MAX_AGE: int = 20 * 60
    DATABASE_SEARCH_MAX_AGE: int = 10 * 60
    COMPLETE_COLLECTION_MAX_AGE: int = 45 * 60
    COMPLETE_COLLECTION_MAX_PAGES: int = 25

    class Config:
        env_file = ".env"


settings = Settings()
