"""Initial device hub schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

credential_type = postgresql.ENUM(
    "FACE", "FINGERPRINT", "CARD", "CAR_NUMBER", "PASSWORD_HASH", "QR_CODE",
    name="credential_type",
    create_type=False,
)
device_type = postgresql.ENUM(
    "CAMERA", "CARD_READER", "FINGERPRINT", "ANPR", "ACCESS_CONTROL", "OTHER",
    name="device_type",
    create_type=False,
)
device_protocol = postgresql.ENUM(
    "HTTP", "HTTPS", "TCP", "UDP", "SDK",
    name="device_protocol",
    create_type=False,
)
device_status = postgresql.ENUM(
    "ONLINE", "OFFLINE", "ERROR", "MAINTENANCE",
    name="device_status",
    create_type=False,
)
sync_status = postgresql.ENUM("SYNCED", "FAILED", name="sync_status", create_type=False)
sync_type = postgresql.ENUM("ADD", "UPDATE", name="sync_type", create_type=False)
webhook_protocol_type = postgresql.ENUM("HTTP", "HTTPS", name="webhook_protocol_type", create_type=False)
webhook_parameter_format = postgresql.ENUM(
    "JSON", "XML", "QUERY_STRING",
    name="webhook_parameter_format",
    create_type=False,
)
device_event_type = postgresql.ENUM(
    "CARD_SCAN",
    "FINGERPRINT_SCAN",
    "FACE_RECOGNITION",
    "DOOR_OPEN",
    "DOOR_CLOSE",
    "ALARM",
    "TAMPER",
    "NETWORK_ERROR",
    "ACCESS_GRANTED",
    "ACCESS_DENIED",
    name="device_event_type",
    create_type=False,
)
audit_actor_type = postgresql.ENUM("ADMIN", "SYSTEM", "DEVICE", name="audit_actor_type", create_type=False)

_ENUMS = (
    credential_type,
    device_type,
    device_protocol,
    device_status,
    sync_status,
    sync_type,
    webhook_protocol_type,
    webhook_parameter_format,
    device_event_type,
    audit_actor_type,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=False),
        sa.Column("department_id", sa.Integer(), nullable=True),
        sa.Column("employee_code", sa.String(length=64), nullable=False),
        sa.Column("first_name", sa.String(length=120), nullable=False),
        sa.Column("last_name", sa.String(length=120), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("photo_key", sa.String(length=512), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_employees_organization_id", "employees", ["organization_id"])
    op.create_index("ix_employees_branch_id", "employees", ["branch_id"])
    op.create_index("ix_employees_department_id", "employees", ["department_id"])

    op.create_table(
        "employee_credentials",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("type", credential_type, nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_employee_credentials_employee_id", "employee_credentials", ["employee_id"])

    op.create_table(
        "devices",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=False),
        sa.Column("department_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("type", device_type, nullable=False),
        sa.Column("host", sa.String(length=255), nullable=False),
        sa.Column("port", sa.Integer(), nullable=False, server_default=sa.text("80")),
        sa.Column("protocol", device_protocol, nullable=False),
        sa.Column("username", sa.String(length=255), nullable=True),
        sa.Column("password_encrypted", sa.Text(), nullable=True),
        sa.Column("mac_address", sa.String(length=64), nullable=True),
        sa.Column("manufacturer", sa.String(length=120), nullable=True),
        sa.Column("model", sa.String(length=120), nullable=True),
        sa.Column("serial_number", sa.String(length=255), nullable=True),
        sa.Column("firmware", sa.String(length=120), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", device_status, nullable=False, server_default=sa.text("'OFFLINE'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=True),
        sa.Column("timeout_seconds", sa.Float(), nullable=True),
        sa.Column("retry_attempts", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("organization_id", "mac_address", name="uq_devices_org_mac_address"),
    )
    op.create_index("ix_devices_organization_id", "devices", ["organization_id"])
    op.create_index("ix_devices_branch_id", "devices", ["branch_id"])
    op.create_index("ix_devices_host", "devices", ["host"])
    op.create_index("ix_devices_serial_number", "devices", ["serial_number"])

    op.create_table(
        "device_templates",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("manufacturer", sa.String(length=120), nullable=False),
        sa.Column("model", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("protocol", device_protocol, nullable=True),
        sa.Column("default_settings", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("capabilities", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.UniqueConstraint("organization_id", "name", name="uq_device_templates_org_name"),
    )
    op.create_index("ix_device_templates_organization_id", "device_templates", ["organization_id"])

    op.create_table(
        "device_configurations",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("device_id", sa.Integer(), nullable=False),
        sa.Column("network_dhcp", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("network_static_ip", sa.String(length=64), nullable=True),
        sa.Column("network_subnet", sa.String(length=64), nullable=True),
        sa.Column("network_gateway", sa.String(length=64), nullable=True),
        sa.Column("network_dns", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default=sa.text("'UTC'")),
        sa.Column("ntp_server", sa.String(length=255), nullable=True),
        sa.Column("sync_interval", sa.Integer(), nullable=False, server_default=sa.text("60")),
        sa.Column("default_access_level", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("allow_unknown_cards", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("offline_mode", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("max_users", sa.Integer(), nullable=False, server_default=sa.text("1000")),
        sa.Column("biometric_threshold", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("duress_finger_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("anti_passback_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("event_buffer_size", sa.Integer(), nullable=False, server_default=sa.text("1000")),
        sa.Column("upload_interval", sa.Integer(), nullable=False, server_default=sa.text("30")),
        sa.Column("retry_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("extra_settings", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("overridden_fields", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("applied_template_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["device_id"], ["devices.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["applied_template_id"], ["device_templates.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("device_id", name="uq_device_configurations_device_id"),
    )

    op.create_table(
        "employee_device_syncs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("device_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("sync_status", sync_status, nullable=False),
        sa.Column("sync_type", sync_type, nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "sync_attempted",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["device_id"], ["devices.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("device_id", "employee_id", name="uq_employee_device_syncs_device_employee"),
    )
    op.create_index("ix_employee_device_syncs_device_id", "employee_device_syncs", ["device_id"])
    op.create_index("ix_employee_device_syncs_employee_id", "employee_device_syncs", ["employee_id"])
    op.create_index("ix_employee_device_syncs_organization_id", "employee_device_syncs", ["organization_id"])

    op.create_table(
        "device_webhooks",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("device_id", sa.Integer(), nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("host_id", sa.String(length=128), nullable=False),
        sa.Column("url", sa.String(length=1024), nullable=False),
        sa.Column("host", sa.String(length=255), nullable=False),
        sa.Column("port", sa.Integer(), nullable=False),
        sa.Column("event_types", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("protocol_type", webhook_protocol_type, nullable=False, server_default=sa.text("'HTTP'")),
        sa.Column(
            "parameter_format_type",
            webhook_parameter_format,
            nullable=False,
            server_default=sa.text("'JSON'"),
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_by", sa.String(length=255), nullable=True),
        sa.Column("trigger_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_triggered", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["device_id"], ["devices.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("device_id", "host_id", name="uq_device_webhooks_device_host"),
    )
    op.create_index("ix_device_webhooks_device_id", "device_webhooks", ["device_id"])
    op.create_index("ix_device_webhooks_organization_id", "device_webhooks", ["organization_id"])
    op.create_index("ix_device_webhooks_host_id", "device_webhooks", ["host_id"])

    op.create_table(
        "device_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("device_id", sa.Integer(), nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("event_type", device_event_type, nullable=False),
        sa.Column("vendor_event_type", sa.String(length=120), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("employee_no", sa.String(length=64), nullable=True),
        sa.Column("card_no", sa.String(length=128), nullable=True),
        sa.Column("webhook_host_id", sa.String(length=128), nullable=True),
        sa.Column("payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["device_id"], ["devices.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_device_events_device_id", "device_events", ["device_id"])
    op.create_index("ix_device_events_organization_id", "device_events", ["organization_id"])
    op.create_index("ix_device_events_occurred_at", "device_events", ["occurred_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "ts_utc",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("organization_id", sa.Integer(), nullable=True),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=120), nullable=False),
        sa.Column("entity_type", sa.String(length=120), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("ip", sa.String(length=255), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("request_id", sa.String(length=128), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("details", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"])
    op.create_index("ix_audit_logs_organization_id", "audit_logs", ["organization_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])


def downgrade() -> None:
    for table_name in (
        "audit_logs",
        "device_events",
        "device_webhooks",
        "employee_device_syncs",
        "device_configurations",
        "device_templates",
        "devices",
        "employee_credentials",
        "employees",
    ):
        op.drop_table(table_name)

    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)
