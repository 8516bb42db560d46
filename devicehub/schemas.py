from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from devicehub.models import (
    CredentialType,
    DeviceEventType,
    DeviceProtocol,
    DeviceStatus,
    DeviceType,
    SyncStatus,
    SyncType,
    WebhookParameterFormat,
    WebhookProtocolType,
)


class DeviceCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    branch_id: int = Field(ge=1)
    department_id: int | None = Field(default=None, ge=1)
    type: DeviceType = DeviceType.ACCESS_CONTROL
    host: str = Field(min_length=1, max_length=255)
    port: int = Field(default=80, ge=1, le=65535)
    protocol: DeviceProtocol = DeviceProtocol.HTTP
    username: str | None = Field(default=None, max_length=255)
    password: str | None = Field(default=None, max_length=255)
    mac_address: str | None = Field(default=None, max_length=64)
    manufacturer: str | None = Field(default=None, max_length=120)
    model: str | None = Field(default=None, max_length=120)
    serial_number: str | None = Field(default=None, max_length=255)
    firmware: str | None = Field(default=None, max_length=120)
    description: str | None = None
    timeout_seconds: float | None = Field(default=None, gt=0, le=300)
    retry_attempts: int | None = Field(default=None, ge=1, le=10)


class DeviceUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    branch_id: int | None = Field(default=None, ge=1)
    department_id: int | None = Field(default=None, ge=1)
    type: DeviceType | None = None
    host: str | None = Field(default=None, min_length=1, max_length=255)
    port: int | None = Field(default=None, ge=1, le=65535)
    protocol: DeviceProtocol | None = None
    username: str | None = Field(default=None, max_length=255)
    password: str | None = Field(default=None, max_length=255)
    mac_address: str | None = Field(default=None, max_length=64)
    manufacturer: str | None = Field(default=None, max_length=120)
    model: str | None = Field(default=None, max_length=120)
    serial_number: str | None = Field(default=None, max_length=255)
    firmware: str | None = Field(default=None, max_length=120)
    description: str | None = None
    status: DeviceStatus | None = None
    timeout_seconds: float | None = Field(default=None, gt=0, le=300)
    retry_attempts: int | None = Field(default=None, ge=1, le=10)


class DeviceActiveUpdate(BaseModel):
    is_active: bool


class DeviceRead(BaseModel):
    id: int
    organization_id: int
    branch_id: int
    department_id: int | None = None
    name: str
    type: DeviceType
    host: str
    port: int
    protocol: DeviceProtocol
    username: str | None = None
    mac_address: str | None = None
    manufacturer: str | None = None
    model: str | None = None
    serial_number: str | None = None
    firmware: str | None = None
    description: str | None = None
    status: DeviceStatus
    is_active: bool
    last_seen: datetime | None = None
    timeout_seconds: float | None = None
    retry_attempts: int | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DeviceCommandRequest(BaseModel):
    command: str = Field(min_length=1, max_length=64)
    parameters: dict[str, Any] = Field(default_factory=dict)
    timeout: float | None = Field(default=None, gt=0, le=300)


class EmployeeSyncRequest(BaseModel):
    employee_ids: list[int] | None = None
    department_id: int | None = Field(default=None, ge=1)
    branch_id: int | None = Field(default=None, ge=1)
    credential_type: CredentialType | None = None
    force_sync: bool = False
    remove_missing: bool = False


class EmployeeSyncSummary(BaseModel):
    device_id: int
    device_name: str
    total_employees: int
    employees_with_credentials: list[dict[str, Any]]
    added: int
    updated: int
    removed: int
    failed: int
    synced_at: datetime
    status: str
    message: str


class RetryFailedSyncsResponse(BaseModel):
    total: int
    successful: int
    failed: int


class EmployeeDeviceSyncRead(BaseModel):
    id: int
    device_id: int
    employee_id: int
    organization_id: int
    sync_status: SyncStatus
    sync_type: SyncType
    error_message: str | None = None
    sync_attempted: datetime
    synced_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class WebhookConfigureRequest(BaseModel):
    url: str | None = Field(default=None, max_length=1024)
    host: str = Field(min_length=1, max_length=255)
    port: int = Field(ge=1, le=65535)
    event_types: list[str] = Field(default_factory=list)
    protocol_type: WebhookProtocolType = WebhookProtocolType.HTTP
    parameter_format_type: WebhookParameterFormat = WebhookParameterFormat.JSON


class DeviceWebhookRead(BaseModel):
    id: int
    device_id: int
    host_id: str
    url: str
    host: str
    port: int
    event_types: list[str]
    protocol_type: WebhookProtocolType
    parameter_format_type: WebhookParameterFormat
    is_active: bool
    trigger_count: int
    last_triggered: datetime | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DeviceEventRead(BaseModel):
    id: int
    device_id: int
    event_type: DeviceEventType
    vendor_event_type: str
    occurred_at: datetime
    employee_no: str | None = None
    card_no: str | None = None

    model_config = ConfigDict(from_attributes=True)


class DeviceConfigurationFields(BaseModel):
    network_dhcp: bool | None = None
    network_static_ip: str | None = Field(default=None, max_length=64)
    network_subnet: str | None = Field(default=None, max_length=64)
    network_gateway: str | None = Field(default=None, max_length=64)
    network_dns: list[str] | None = None
    timezone: str | None = Field(default=None, max_length=64)
    ntp_server: str | None = Field(default=None, max_length=255)
    sync_interval: int | None = Field(default=None, ge=1)
    default_access_level: int | None = Field(default=None, ge=0)
    allow_unknown_cards: bool | None = None
    offline_mode: bool | None = None
    max_users: int | None = Field(default=None, ge=1)
    biometric_threshold: int | None = Field(default=None, ge=0)
    duress_finger_enabled: bool | None = None
    anti_passback_enabled: bool | None = None
    event_buffer_size: int | None = Field(default=None, ge=1)
    upload_interval: int | None = Field(default=None, ge=1)
    retry_attempts: int | None = Field(default=None, ge=0)
    extra_settings: dict[str, Any] | None = None


class DeviceConfigurationUpdate(DeviceConfigurationFields):
    push_to_device: bool = False


class DeviceConfigurationRead(BaseModel):
    id: int
    device_id: int
    network_dhcp: bool
    network_static_ip: str | None = None
    network_subnet: str | None = None
    network_gateway: str | None = None
    network_dns: list[str]
    timezone: str
    ntp_server: str | None = None
    sync_interval: int
    default_access_level: int
    allow_unknown_cards: bool
    offline_mode: bool
    max_users: int
    biometric_threshold: int
    duress_finger_enabled: bool
    anti_passback_enabled: bool
    event_buffer_size: int
    upload_interval: int
    retry_attempts: int
    extra_settings: dict[str, Any]
    overridden_fields: list[str]
    applied_template_id: int | None = None
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DeviceTemplateCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    manufacturer: str = Field(min_length=1, max_length=120)
    model: str = Field(min_length=1, max_length=120)
    description: str | None = None
    protocol: DeviceProtocol | None = None
    default_settings: dict[str, Any] = Field(default_factory=dict)
    capabilities: list[str] = Field(default_factory=list)
    priority: int = 0
    is_active: bool = True


class DeviceTemplateUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    manufacturer: str | None = Field(default=None, min_length=1, max_length=120)
    model: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = None
    protocol: DeviceProtocol | None = None
    default_settings: dict[str, Any] | None = None
    capabilities: list[str] | None = None
    priority: int | None = None
    is_active: bool | None = None

    @model_validator(mode="after")
    def _validate_not_empty(self) -> "DeviceTemplateUpdate":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided.")
        return self


class DeviceTemplateRead(BaseModel):
    id: int
    organization_id: int
    name: str
    manufacturer: str
    model: str
    description: str | None = None
    protocol: DeviceProtocol | None = None
    default_settings: dict[str, Any]
    capabilities: list[str]
    priority: int
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
