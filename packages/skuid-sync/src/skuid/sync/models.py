from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, RootModel, field_validator, model_validator


def _lower_keys(data: Any) -> Any:
    # The server is not consistent about key casing (Host vs host, OK vs ok).
    if isinstance(data, dict):
        return {str(k).lower(): v for k, v in data.items()}
    return data


@dataclass(frozen=True)
class AuthToken:
    """Opaque bearer credential for one host. Never persisted."""

    access_token: str
    host: str

    def __repr__(self) -> str:
        return f"AuthToken(host={self.host!r}, access_token='***')"


@dataclass(frozen=True)
class ArchiveEntry:
    path: str
    data: bytes = b""
    is_directory: bool = False


class PlanFilter(BaseModel):
    """Restricts a plan to one app and/or a set of pages."""

    model_config = ConfigDict(populate_by_name=True)

    app_name: str = Field(default="", alias="appName")
    page_names: List[str] = Field(default_factory=list, alias="pageNames")

    def is_empty(self) -> bool:
        return not self.app_name and not self.page_names

    def to_payload(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.app_name:
            out["appName"] = self.app_name
        if self.page_names:
            out["pageNames"] = list(self.page_names)
        return out


class PlanShard(BaseModel):
    """One independently executable unit of a retrieve or deploy plan.

    `host` empty means "same host as the session"; otherwise the shard runs
    against a separate service which needs its own authorization token.
    """

    model_config = ConfigDict(extra="ignore")

    host: str = ""
    port: str = ""
    url: str
    type: str = ""
    metadata: Dict[str, List[str]] = Field(default_factory=dict)
    appname: str = ""
    pagenames: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        return _lower_keys(data)

    @field_validator("url")
    @classmethod
    def _url_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("shard url must not be empty")
        return v.strip()

    @field_validator("host", "type", "appname", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("port", mode="before")
    @classmethod
    def _port_to_str(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("pagenames", "warnings", mode="before")
    @classmethod
    def _none_to_list(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_lists(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k).lower(): ([] if names is None else names) for k, names in v.items()}
        return v

    def base_url(self) -> str:
        if not self.host:
            return ""
        host = self.host.rstrip("/")
        if "://" not in host:
            host = "https://" + host
        if self.port:
            host = f"{host}:{self.port}"
        return host

    def names_for(self, directory_name: str) -> Optional[List[str]]:
        return self.metadata.get(directory_name)


class PlanPayload(RootModel[Dict[str, PlanShard]]):
    """Map of shard name to shard, as returned by the plan endpoints."""


class DeployShardResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ok: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        return _lower_keys(data)

    @field_validator("errors", "warnings", mode="before")
    @classmethod
    def _none_to_list(cls, v: Any) -> Any:
        if v is None:
            return []
        return [str(x) for x in v] if isinstance(v, list) else v


class DataService(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""


class SiteVariable(BaseModel):
    """A server-side variable scoped to a data service."""

    model_config = ConfigDict(extra="ignore")

    id: str = ""
    name: str
    value: str = ""
    is_secret: bool = False
    data_service_id: str = ""
    # Filled in client-side from the data service list.
    data_service_name: str = ""

    @field_validator("value", "data_service_id", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    def display_value(self) -> str:
        return "*****" if self.is_secret else self.value
