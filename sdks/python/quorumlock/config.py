"""Configuration management using Pydantic Settings."""
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import AddressDescriptor, descriptor_from_url


class RedlockSettings(BaseSettings):
    """Client settings loaded from ``QUORUMLOCK_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="QUORUMLOCK_", env_file=".env", extra="ignore")

    nodes: str = Field(
        default="redis://127.0.0.1:6379/0",
        description="Comma-separated node URLs, e.g. redis://a:6379/0,redis://b:6379/0",
    )
    retry_delay: int = Field(default=200, ge=0, description="Maximum delay between rounds in milliseconds")
    retry_count: int = Field(default=3, ge=0, description="Rounds attempted after the first one")
    clock_drift_factor: float = Field(default=0.01, ge=0, description="Fraction of the ttl reserved for clock drift")
    eager_init: bool = Field(default=False, description="Connect to every node when the client is created")

    def node_urls(self) -> List[str]:
        return [url.strip() for url in self.nodes.split(",") if url.strip()]

    def descriptors(self) -> List[AddressDescriptor]:
        return [descriptor_from_url(url) for url in self.node_urls()]
