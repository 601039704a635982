from pydantic_settings import BaseSettings
from typing import Any, Dict, Mapping, Optional


# Workload option name -> Settings field
WORKLOAD_OPTIONS = {
    "testDuration": "TEST_DURATION",
}


class Settings(BaseSettings):
    # Run length
    TEST_DURATION: float = 10.0

    # Inter-cycle waits (uniform in [0, max))
    FIRST_DELAY_MAX: float = 1.0
    SECOND_DELAY_MAX: float = 10.0

    # Randomness (None = fresh seed per run)
    SEED: Optional[int] = None

    # Reference store
    DATABASE_URL: str = "sqlite://"
    CHUNK_SIZE: int = 1000
    FEED_BATCHES_PER_CHUNK: int = 100
    FAULT_RATE: float = 0.0

    # Retry policy
    RETRY_MIN_WAIT: float = 0.01
    RETRY_MAX_WAIT: float = 1.0
    RETRY_MAX_ATTEMPTS: Optional[int] = None
    POP_MAX_ATTEMPTS: int = 3

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "allow"  # Allow extra environment variables

    @classmethod
    def from_options(cls, options: Mapping[str, Any], **overrides: Any) -> "Settings":
        """
        Build settings from workload options using their original spelling.

        Raises:
            ValueError: If an option name is not recognized.
        """
        values: Dict[str, Any] = {}
        for name, value in options.items():
            if name not in WORKLOAD_OPTIONS:
                raise ValueError(f"Unknown workload option: {name}")
            values[WORKLOAD_OPTIONS[name]] = value
        values.update(overrides)
        return cls(**values)


settings = Settings()
