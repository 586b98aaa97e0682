from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EnvironmentConfig(BaseModel):
    """Declarative build recipe for an environment's container"""
    base_image: str
    workdir: str
    setup_commands: List[str] = Field(default_factory=list)
    install_commands: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)


class EnvironmentState(BaseModel):
    """Everything about an environment that is persisted alongside its commits"""
    title: str
    description: str = ""
    config: EnvironmentConfig
    from_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
