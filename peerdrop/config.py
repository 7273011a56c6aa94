from functools import lru_cache
from typing import List, Optional, Union

from aiortc import RTCConfiguration, RTCIceServer
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class IceServer(BaseModel):
    """Network traversal hint handed to the peer connection (STUN/TURN)."""

    urls: Union[str, List[str]]
    username: Optional[str] = None
    credential: Optional[str] = None

    def to_rtc(self) -> RTCIceServer:
        return RTCIceServer(urls=self.urls, username=self.username, credential=self.credential)


DEFAULT_ICE_SERVERS = [
    IceServer(urls="stun:stun.l.google.com:19302"),
    IceServer(urls="stun:stun1.l.google.com:19302"),
]


class Settings(BaseSettings):
    # --- peer connection / transfer ---
    ice_servers: List[IceServer] = Field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    chunk_size: int = Field(default=64 * 1024, gt=0)
    max_buffered_amount: int = Field(default=256 * 1024, ge=0)
    backpressure_delay: float = Field(default=0.05, gt=0)

    # --- rendezvous ---
    signal_url: str = "ws://127.0.0.1:8765/ws"
    host: str = "0.0.0.0"
    port: int = 8765
    ws_path: str = "/ws"

    # empty rooms older than this are evicted by the sweeper
    room_ttl: float = 60 * 60
    sweep_interval: float = 5 * 60

    received_files_dir: str = "received_files"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="PEERDROP_", env_file=".env", extra="ignore")

    def rtc_configuration(self) -> RTCConfiguration:
        return RTCConfiguration(iceServers=[s.to_rtc() for s in self.ice_servers])


@lru_cache
def get_settings() -> Settings:
    return Settings()
