"""Router fleet configuration and lookup."""

from __future__ import annotations

from typing import Iterable, Iterator

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, SecretStr

from hotspot_relay.errors import UnknownRouterError


class RouterConfig(BaseModel):
    """One fleet router reachable over the overlay tunnel."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    host: str = Field(min_length=1)
    port: int = Field(default=8728, ge=1, le=65535)
    username: str = Field(default="admin", validation_alias=AliasChoices("username", "user"))
    password: SecretStr = Field(
        default=SecretStr(""), validation_alias=AliasChoices("password", "pass")
    )
    use_tls: bool = Field(default=False, validation_alias=AliasChoices("use_tls", "useTls", "tls"))
    timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("timeout_seconds", "timeoutSeconds"),
    )
    tunnel_peer_key: str | None = Field(
        default=None,
        description="Overlay public key of the router, used for the offline pre-check.",
        validation_alias=AliasChoices("tunnel_peer_key", "wgPublicKey", "publicKey"),
    )

    def describe(self) -> dict[str, object]:
        return {"id": self.id, "host": self.host, "port": self.port, "tls": self.use_tls}


class RouterDirectory:
    """Read-only lookup of configured routers by id."""

    def __init__(self, routers: Iterable[RouterConfig] = ()) -> None:
        self._routers: dict[str, RouterConfig] = {router.id: router for router in routers}

    def get(self, router_id: str) -> RouterConfig:
        router = self._routers.get(router_id)
        if router is None:
            raise UnknownRouterError(router_id)
        return router

    def find(self, router_id: str | None) -> RouterConfig | None:
        if not router_id:
            return None
        return self._routers.get(router_id)

    def find_by_host(self, host: str | None) -> RouterConfig | None:
        if not host:
            return None
        for router in self._routers.values():
            if router.host == host:
                return router
        return None

    def ids(self) -> list[str]:
        return sorted(self._routers)

    def __contains__(self, router_id: object) -> bool:
        return router_id in self._routers

    def __iter__(self) -> Iterator[RouterConfig]:
        return iter(self._routers.values())

    def __len__(self) -> int:
        return len(self._routers)
