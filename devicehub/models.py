from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from devicehub.db import Base

JsonType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceType(str, enum.Enum):
    CAMERA = "CAMERA"
    CARD_READER = "CARD_READER"
    FINGERPRINT = "FINGERPRINT"
    ANPR = "ANPR"
    ACCESS_CONTROL = "ACCESS_CONTROL"
    OTHER = "OTHER"


class DeviceProtocol(str, enum.Enum):
    HTTP = "HTTP"
    HTTPS = "HTTPS"
    TCP = "TCP"
    UDP = "UDP"
    SDK = "SDK"


class DeviceStatus(str, enum.Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    ERROR = "ERROR"
    MAINTENANCE = "MAINTENANCE"


class CredentialType(str, enum.Enum):
    FACE = "FACE"
    FINGERPRINT = "FINGERPRINT"
    CARD = "CARD"
    CAR_NUMBER = "CAR_NUMBER"
    PASSWORD_HASH = "PASSWORD_HASH"
    QR_CODE = "QR_CODE"


class SyncStatus(str, enum.Enum):
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class SyncType(str, enum.Enum):
    ADD = "ADD"
    UPDATE = "UPDATE"


class WebhookProtocolType(str, enum.Enum):
    HTTP = "HTTP"
    HTTPS = "HTTPS"


class WebhookParameterFormat(str, enum.Enum):
    JSON = "JSON"
    XML = "XML"
    QUERY_STRING = "QUERY_STRING"


class DeviceEventType(str, enum.Enum):
    CARD_SCAN = "CARD_SCAN"
    FINGERPRINT_SCAN = "FINGERPRINT_SCAN"
    FACE_RECOGNITION = "FACE_RECOGNITION"
    DOOR_OPEN = "DOOR_OPEN"
    DOOR_CLOSE = "DOOR_CLOSE"
    ALARM = "ALARM"
    TAMPER = "TAMPER"
    NETWORK_ERROR = "NETWORK_ERROR"
    ACCESS_GRANTED = "ACCESS_GRANTED"
    ACCESS_DENIED = "ACCESS_DENIED"


class AuditActorType(str, enum.Enum):
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"
    DEVICE = "DEVICE"


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    branch_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    department_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    employee_code: Mapped[str] = mapped_column(String(64), nullable=False)
    first_name: Mapped[str] = mapped_column(String(120), nullable=False)
    last_name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    photo_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    credentials: Mapped[list[EmployeeCredential]] = relationship(
        back_populates="employee",
        cascade="all, delete-orphan",
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class EmployeeCredential(Base):
    __tablename__ = "employee_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[CredentialType] = mapped_column(Enum(CredentialType, name="credential_type"), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    credential_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JsonType,
        nullable=False,
        default=dict,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    employee: Mapped[Employee] = relationship(back_populates="credentials")


class Device(Base):
    __tablename__ = "devices"
    __table_args__ = (
        UniqueConstraint("organization_id", "mac_address", name="uq_devices_org_mac_address"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    branch_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    department_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[DeviceType] = mapped_column(
        Enum(DeviceType, name="device_type"),
        nullable=False,
        default=DeviceType.ACCESS_CONTROL,
    )
    host: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    port: Mapped[int] = mapped_column(Integer, nullable=False, default=80, server_default=text("80"))
    protocol: Mapped[DeviceProtocol] = mapped_column(
        Enum(DeviceProtocol, name="device_protocol"),
        nullable=False,
        default=DeviceProtocol.HTTP,
    )
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    mac_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    manufacturer: Mapped[str | None] = mapped_column(String(120), nullable=True)
    model: Mapped[str | None] = mapped_column(String(120), nullable=True)
    serial_number: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    firmware: Mapped[str | None] = mapped_column(String(120), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[DeviceStatus] = mapped_column(
        Enum(DeviceStatus, name="device_status"),
        nullable=False,
        default=DeviceStatus.OFFLINE,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    last_seen: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    timeout_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    retry_attempts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    configuration: Mapped[DeviceConfiguration | None] = relationship(
        back_populates="device",
        uselist=False,
        cascade="all, delete-orphan",
    )
    employee_syncs: Mapped[list[EmployeeDeviceSync]] = relationship(
        back_populates="device",
        cascade="all, delete-orphan",
    )
    webhooks: Mapped[list[DeviceWebhook]] = relationship(
        back_populates="device",
        cascade="all, delete-orphan",
    )
    events: Mapped[list[DeviceEvent]] = relationship(
        back_populates="device",
        cascade="all, delete-orphan",
    )


class DeviceTemplate(Base):
    __tablename__ = "device_templates"
    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_device_templates_org_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    manufacturer: Mapped[str] = mapped_column(String(120), nullable=False)
    model: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    protocol: Mapped[DeviceProtocol | None] = mapped_column(
        Enum(DeviceProtocol, name="device_protocol"),
        nullable=True,
    )
    default_settings: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    capabilities: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class DeviceConfiguration(Base):
    __tablename__ = "device_configurations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    device_id: Mapped[int] = mapped_column(
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    network_dhcp: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    network_static_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    network_subnet: Mapped[str | None] = mapped_column(String(64), nullable=True)
    network_gateway: Mapped[str | None] = mapped_column(String(64), nullable=True)
    network_dns: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    ntp_server: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sync_interval: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    default_access_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    allow_unknown_cards: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    offline_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    max_users: Mapped[int] = mapped_column(Integer, nullable=False, default=1000)
    biometric_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    duress_finger_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    anti_passback_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    event_buffer_size: Mapped[int] = mapped_column(Integer, nullable=False, default=1000)
    upload_interval: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    retry_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    extra_settings: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    overridden_fields: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
    applied_template_id: Mapped[int | None] = mapped_column(
        ForeignKey("device_templates.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    device: Mapped[Device] = relationship(back_populates="configuration")


class EmployeeDeviceSync(Base):
    __tablename__ = "employee_device_syncs"
    __table_args__ = (
        UniqueConstraint("device_id", "employee_id", name="uq_employee_device_syncs_device_employee"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    device_id: Mapped[int] = mapped_column(
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    sync_status: Mapped[SyncStatus] = mapped_column(Enum(SyncStatus, name="sync_status"), nullable=False)
    sync_type: Mapped[SyncType] = mapped_column(Enum(SyncType, name="sync_type"), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_attempted: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    device: Mapped[Device] = relationship(back_populates="employee_syncs")
    employee: Mapped[Employee] = relationship()


class DeviceWebhook(Base):
    __tablename__ = "device_webhooks"
    __table_args__ = (
        UniqueConstraint("device_id", "host_id", name="uq_device_webhooks_device_host"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    device_id: Mapped[int] = mapped_column(
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    host_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    url: Mapped[str] = mapped_column(String(1024), nullable=False)
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    port: Mapped[int] = mapped_column(Integer, nullable=False)
    event_types: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
    protocol_type: Mapped[WebhookProtocolType] = mapped_column(
        Enum(WebhookProtocolType, name="webhook_protocol_type"),
        nullable=False,
        default=WebhookProtocolType.HTTP,
    )
    parameter_format_type: Mapped[WebhookParameterFormat] = mapped_column(
        Enum(WebhookParameterFormat, name="webhook_parameter_format"),
        nullable=False,
        default=WebhookParameterFormat.JSON,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    trigger_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    last_triggered: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    device: Mapped[Device] = relationship(back_populates="webhooks")


class DeviceEvent(Base):
    __tablename__ = "device_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    device_id: Mapped[int] = mapped_column(
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    event_type: Mapped[DeviceEventType] = mapped_column(Enum(DeviceEventType, name="device_event_type"), nullable=False)
    vendor_event_type: Mapped[str] = mapped_column(String(120), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    employee_no: Mapped[str | None] = mapped_column(String(64), nullable=True)
    card_no: Mapped[str | None] = mapped_column(String(128), nullable=True)
    webhook_host_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    device: Mapped[Device] = relationship(back_populates="events")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    organization_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    actor_type: Mapped[AuditActorType] = mapped_column(Enum(AuditActorType, name="audit_actor_type"), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    entity_type: Mapped[str | None] = mapped_column(String(120), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
