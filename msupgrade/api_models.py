from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .phases import UpgradeState


# --- Exchange wire models ---


class _ExchangeModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class HardwareMatch(_ExchangeModel):
    usb_device_ids: str = Field("", alias="usbDeviceIds")
    devfiles: str = Field("", alias="devFiles")


class UserInput(_ExchangeModel):
    name: str
    label: str = ""
    type: str = ""
    default_value: str = Field("", alias="defaultValue")


class WorkloadDeployment(_ExchangeModel):
    deployment: str = ""
    deployment_signature: str = ""
    torrent: str = ""


class ExchangeMicroserviceDefinition(_ExchangeModel):
    owner: str = ""
    label: str = ""
    description: str = ""
    spec_ref: str = Field(..., alias="specRef")
    version: str
    arch: str = ""
    sharable: str = ""
    download_url: str = Field("", alias="downloadUrl")
    match_hardware: HardwareMatch = Field(default_factory=HardwareMatch, alias="matchHardware")
    user_inputs: list[UserInput] = Field(default_factory=list, alias="userInput")
    workloads: list[WorkloadDeployment] = Field(default_factory=list)
    last_updated: str = Field("", alias="lastUpdated")


class GetMicroservicesResponse(_ExchangeModel):
    microservices: dict[str, ExchangeMicroserviceDefinition] = Field(default_factory=dict)
    last_index: int = Field(0, alias="lastIndex")


class RegisteredMicroservice(_ExchangeModel):
    url: str
    num_agreements: int = Field(0, alias="numAgreements")
    policy: str = ""
    properties: list[dict[str, Any]] = Field(default_factory=list)


class ExchangeNode(_ExchangeModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    token: str = ""
    name: str = ""
    registered_microservices: list[RegisteredMicroservice] = Field(default_factory=list, alias="registeredMicroservices")
    msg_end_point: str = Field("", alias="msgEndPoint")
    software_versions: dict[str, str] = Field(default_factory=dict, alias="softwareVersions")
    public_key: str = Field("", alias="publicKey")


# --- API request models ---


class InstallRequest(BaseModel):
    spec_ref: str = Field(..., description="Microservice spec ref (url)")
    org: str
    arch: str
    upgrade_version_range: str = Field("0.0.0", description="Version range, e.g. 1.0.0 or [1.0.0,2.0.0)")
    name: str = ""
    auto_upgrade: bool = False
    active_upgrade: bool = True


class UpgradeConfigRequest(BaseModel):
    name: str | None = Field(None, description="Node-local name for the microservice")
    upgrade_version_range: str | None = Field(None, description="Version range, e.g. 1.0.0 or [1.0.0,2.0.0)")
    auto_upgrade: bool | None = None
    active_upgrade: bool | None = Field(None, description="Evacuate agreements before upgrading")


class PhaseRequest(BaseModel):
    state: UpgradeState
    reason: int = Field(0, ge=0, description="Failure reason code, only used for 'failed'")
    description: str = ""


class AttributeRequest(BaseModel):
    kind: str = Field(..., description="compute|architecture|ha|metering|counterpartyproperty|property|agreementprotocol")
    values: dict[str, Any] = Field(default_factory=dict)
    service_urls: list[str] = Field(default_factory=list, description="Empty applies to all microservices")
    label: str = ""
