from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class StageMap(BaseModel):
    """Named pipeline stages -> Kommo status ids for one tenant."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    waiting_for_proof: Optional[int] = None
    proof_received: Optional[int] = None
    proof_rejected: Optional[int] = None
    no_response: Optional[int] = None
    manual_help: Optional[int] = None
    retry: Optional[int] = None
    transferred: Optional[int] = None


class KommoConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    access_token: str = ""
    subdomain: str = ""
    pipeline_id: Optional[int] = None
    whatsapp_scope_id: Optional[str] = None
    stages: StageMap = StageMap()
    retry_count_field_id: Optional[int] = None
    tracking_id_field_id: Optional[int] = None
    amount_field_id: Optional[int] = None
    username_field_id: Optional[int] = None
    password_field_id: Optional[int] = None
    max_retries: int = Field(default=3, ge=1)


class BackendConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    api_url: str = ""
    api_token: str = ""
    skin_id: Optional[str] = None
    username_prefix: str = "bet"
    username_digits: int = Field(default=8, ge=4, le=12)
    login_url: Optional[str] = None
    origin: Optional[str] = None


class ProxyConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    host: str
    port: int
    username: str
    password: str

    @property
    def url(self) -> str:
        return f"http://{self.username}:{self.password}@{self.host}:{self.port}"


class MetaConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    pixel_id: str
    access_token: str
    test_event_code: Optional[str] = None
    currency: str = "ARS"
    event_name: str = "Purchase"


class TenantConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    client_id: str
    name: str
    kommo: KommoConfig
    backend: Optional[BackendConfig] = None
    proxy: Optional[ProxyConfig] = None
    meta: Optional[MetaConfig] = None


class PipelineGroup(BaseModel):
    """Several tenants sharing one Kommo account, told apart by pipeline id."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    base: str
    members: tuple[str, ...]
