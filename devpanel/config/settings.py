"""Application settings and configuration"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "DevPanel Crawler"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./devpanel.db"

    # GitHub API
    GITHUB_TOKEN: Optional[str] = None
    GITHUB_API_URL: str = "https://api.github.com"
    USER_AGENT: str = "DevPanelCrawler/1.0"

    # Request policy
    REQUEST_TIMEOUT_SECONDS: float = 30.0
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BACKOFF_BASE_SECONDS: float = 1.0
    RETRY_BACKOFF_MAX_SECONDS: float = 30.0
    GRAPHQL_THROTTLE_MS: int = 800  # pause after every GraphQL call

    # User cohort sampling
    SAMPLING_SEED: int = 42
    USERS_PER_BAND: Optional[int] = None
    USER_SEARCH_PER_PAGE: int = 100
    USER_SEARCH_PAGES_PER_ORDER: int = 2

    # Baseline gate
    BASELINE_YEARS: List[int] = [2020, 2021]
    CONTRIBUTION_YEARS: List[int] = [2020, 2021, 2022, 2023, 2024, 2025]
    BASELINE_MIN_CONTRIBUTIONS: int = 50
    CONTRIBUTION_CHUNK_SIZE: int = 200

    # Repository cohort
    REPO_LANGUAGE_COUNT: int = 5
    REPOS_PER_LANGUAGE: int = 10
    REPO_MIN_STARS: int = 5000
    REPO_PR_PAGES: int = 3
    REPO_ISSUE_PAGES: int = 3

    # Adoption signal scan
    ADOPTION_PR_PAGES: int = 2
    ADOPTION_PR_PER_PAGE: int = 50

    # Sync jobs
    SYNC_LEASE_SECONDS: int = 6 * 60 * 60

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields in .env


settings = Settings()
