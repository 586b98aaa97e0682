from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment defaults, used when the repository has no config file
    DEFAULT_BASE_IMAGE: str = "ubuntu:24.04"
    DEFAULT_WORKDIR: str = "/workdir"
    DEFAULT_SHELL: str = "sh"

    # Git layout
    BRANCH_PREFIX: str = "branchbox"
    CONFIG_PATH: str = ".branchbox/environment.json"
    COMMIT_AUTHOR_NAME: str = "branchbox"
    COMMIT_AUTHOR_EMAIL: str = "branchbox@localhost"

    # Seconds; None means commands may run forever
    EXEC_TIMEOUT: Optional[float] = None

    model_config = {
        "env_file": ".env",
        "env_prefix": "BRANCHBOX_",
        "extra": "ignore",
    }


@lru_cache
def get_settings():
    return Settings()
