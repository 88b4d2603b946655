from typing import List, Literal, Optional

from pydantic import Field

from toolbox_api.schemas.common import CamelModel

ServerStatus = Literal["stopped", "running"]


class ProxyConfig(CamelModel):
    prefix: str = Field(..., description="Path prefix, e.g. /api")
    target: str = Field(..., description="Upstream base URL, e.g. http://127.0.0.1:3000")


class ServerConfigInput(CamelModel):
    name: str = Field(..., min_length=1)
    port: int
    root_dir: str
    cors: bool = True
    gzip: bool = True
    cache_control: Optional[str] = None
    url_prefix: Optional[str] = None
    index_page: Optional[str] = None
    proxies: List[ProxyConfig] = Field(default_factory=list)


class ServerConfig(CamelModel):
    id: str
    name: str
    port: int
    root_dir: str
    cors: bool = True
    gzip: bool = True
    cache_control: Optional[str] = None
    url_prefix: str = "/"
    index_page: str = "index.html"
    proxies: List[ProxyConfig] = Field(default_factory=list)
    status: ServerStatus = "stopped"
    url: Optional[str] = None
    created_at: int


class StartServerResponse(CamelModel):
    url: str
