"""Order routing core: identity, master data, orders, tracking ledger, transfers, cards, event bus.

Revision ID: 0001_order_routing
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_order_routing"
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return sa.Column("id", sa.String(length=36), primary_key=True)


def _created():
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False)


def _updated():
    return [
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_by", sa.String(length=36), nullable=True),
    ]


def _stage_columns():
    return [
        _id(),
        _created(),
        *_updated(),
        sa.Column("code", sa.String(length=64), nullable=False, unique=True),
        sa.Column("order_id", sa.String(length=36), sa.ForeignKey("prod_order.id"), nullable=True),
        sa.Column("department_id", sa.String(length=36), sa.ForeignKey("department.id"), nullable=True),
        sa.Column("fabric_type", sa.String(length=128), nullable=True),
        sa.Column("color", sa.String(length=64), nullable=True),
        sa.Column("quantity", sa.Float(), nullable=False),
        sa.Column("unit", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("properties", sa.JSON(), nullable=False),
        sa.Column("source_process_id", sa.String(length=36), nullable=True),
        sa.Column("source_process_type", sa.String(length=32), nullable=True),
        sa.Column("transfer_id", sa.String(length=36), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    # --- Master data ---
    op.create_table(
        "department",
        _id(),
        _created(),
        sa.Column("code", sa.String(length=32), nullable=False, unique=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("color", sa.String(length=16), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
    )

    # --- Identity ---
    op.create_table(
        "auth_user",
        _id(),
        _created(),
        sa.Column("email", sa.String(length=256), nullable=False),
        sa.Column("full_name", sa.String(length=256), nullable=False),
        sa.Column("password_hash", sa.String(length=512), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("department_id", sa.String(length=36), sa.ForeignKey("department.id"), nullable=True),
    )
    op.create_index("ix_auth_user_email", "auth_user", ["email"], unique=True)
    op.create_index("ix_auth_user_department_id", "auth_user", ["department_id"])

    op.create_table(
        "auth_role",
        _id(),
        _created(),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("description", sa.String(length=256), nullable=False),
    )
    op.create_index("ix_auth_role_name", "auth_role", ["name"], unique=True)

    op.create_table(
        "auth_permission",
        _id(),
        _created(),
        sa.Column("code", sa.String(length=128), nullable=False),
        sa.Column("description", sa.String(length=256), nullable=False),
    )
    op.create_index("ix_auth_permission_code", "auth_permission", ["code"], unique=True)

    op.create_table(
        "auth_user_role",
        _id(),
        _created(),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("scope_type", sa.String(length=32), nullable=False),
        sa.Column("scope_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("auth_user.id"), nullable=False),
        sa.Column("role_id", sa.String(length=36), sa.ForeignKey("auth_role.id"), nullable=False),
    )
    op.create_index(
        "uq_auth_user_role_grant",
        "auth_user_role",
        ["tenant_id", "user_id", "role_id", "scope_type", "scope_id"],
        unique=True,
    )

    op.create_table(
        "auth_role_permission",
        _id(),
        _created(),
        sa.Column("role_id", sa.String(length=36), sa.ForeignKey("auth_role.id"), nullable=False),
        sa.Column("permission_id", sa.String(length=36), sa.ForeignKey("auth_permission.id"), nullable=False),
    )
    op.create_index("uq_auth_role_perm_role_perm", "auth_role_permission", ["role_id", "permission_id"], unique=True)

    op.create_table(
        "machine",
        _id(),
        _created(),
        sa.Column("code", sa.String(length=64), nullable=False, unique=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("department_id", sa.String(length=36), sa.ForeignKey("department.id"), nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False),
    )
    op.create_index("ix_machine_department_id", "machine", ["department_id"])

    op.create_table(
        "process_type",
        _id(),
        _created(),
        sa.Column("code", sa.String(length=64), nullable=False, unique=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("department_id", sa.String(length=36), sa.ForeignKey("department.id"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
    )
    op.create_index("ix_process_type_department_id", "process_type", ["department_id"])

    op.create_table(
        "route_template",
        _id(),
        _created(),
        sa.Column("code", sa.String(length=64), nullable=False, unique=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.String(length=512), nullable=True),
        sa.Column("fabric_type", sa.String(length=128), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
    )

    op.create_table(
        "route_template_step",
        _id(),
        _created(),
        sa.Column("route_template_id", sa.String(length=36), sa.ForeignKey("route_template.id"), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("department_id", sa.String(length=36), sa.ForeignKey("department.id"), nullable=False),
        sa.Column("process_type_id", sa.String(length=36), sa.ForeignKey("process_type.id"), nullable=True),
        sa.Column("estimated_hours", sa.Float(), nullable=True),
        sa.Column("requires_quality_check", sa.Boolean(), nullable=False),
        sa.UniqueConstraint("route_template_id", "step_order", name="uq_route_template_step_order"),
    )
    op.create_index("ix_route_template_step_route_template_id", "route_template_step", ["route_template_id"])

    # --- Orders ---
    op.create_table(
        "prod_order",
        _id(),
        _created(),
        *_updated(),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("order_number", sa.String(length=64), nullable=False, unique=True),
        sa.Column("customer_name", sa.String(length=256), nullable=False),
        sa.Column("fabric_type", sa.String(length=128), nullable=True),
        sa.Column("color", sa.String(length=64), nullable=True),
        sa.Column("quantity", sa.Float(), nullable=False),
        sa.Column("unit", sa.String(length=16), nullable=False),
        sa.Column("order_date", sa.Date(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index("ix_prod_order_tenant_id", "prod_order", ["tenant_id"])

    op.create_table(
        "order_material_requirement",
        _id(),
        _created(),
        *_updated(),
        sa.Column("order_id", sa.String(length=36), sa.ForeignKey("prod_order.id"), nullable=False),
        sa.Column("material_type", sa.String(length=32), nullable=False),
        sa.Column("material_ref", sa.String(length=64), nullable=True),
        sa.Column("description", sa.String(length=512), nullable=True),
        sa.Column("quantity", sa.Float(), nullable=False),
        sa.Column("unit", sa.String(length=16), nullable=False),
        sa.Column("is_available", sa.Boolean(), nullable=False),
        sa.Column("estimated_arrival_date", sa.Date(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index("ix_order_material_requirement_order_id", "order_material_requirement", ["order_id"])

    op.create_table(
        "order_shipment",
        _id(),
        _created(),
        sa.Column("order_id", sa.String(length=36), sa.ForeignKey("prod_order.id"), nullable=False),
        sa.Column("shipment_id", sa.String(length=64), nullable=False),
        sa.Column("quantity", sa.Float(), nullable=False),
        sa.Column("unit", sa.String(length=16), nullable=False),
        sa.Column("package_count", sa.Integer(), nullable=True),
        sa.Column("pallet_count", sa.Integer(), nullable=True),
        sa.Column("gross_weight", sa.Float(), nullable=True),
        sa.Column("net_weight", sa.Float(), nullable=True),
        sa.Column("volume_m3", sa.Float(), nullable=True),
        sa.Column("is_complete", sa.Boolean(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=36), nullable=True),
    )
    op.create_index("ix_order_shipment_order_id", "order_shipment", ["order_id"])
    op.create_index("ix_order_shipment_shipment_id", "order_shipment", ["shipment_id"])

    # --- Tracking ---
    op.create_table(
        "tracking_status",
        _id(),
        _created(),
        sa.Column("code", sa.String(length=64), nullable=False, unique=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.String(length=512), nullable=True),
        sa.Column("color", sa.String(length=16), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
    )

    op.create_table(
        "tracking_transition",
        _id(),
        _created(),
        sa.Column("from_status_id", sa.String(length=36), sa.ForeignKey("tracking_status.id"), nullable=False),
        sa.Column("to_status_id", sa.String(length=36), sa.ForeignKey("tracking_status.id"), nullable=False),
        sa.Column("description", sa.String(length=512), nullable=True),
        sa.Column("is_automated", sa.Boolean(), nullable=False),
        sa.Column("required_permission", sa.String(length=128), nullable=True),
        sa.UniqueConstraint("from_status_id", "to_status_id", name="uq_tracking_transition_edge"),
    )
    op.create_index("ix_tracking_transition_from_status_id", "tracking_transition", ["from_status_id"])
    op.create_index("ix_tracking_transition_to_status_id", "tracking_transition", ["to_status_id"])

    op.create_table(
        "tracking_event",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.String(length=36), sa.ForeignKey("prod_order.id"), nullable=False),
        sa.Column("status_id", sa.String(length=36), sa.ForeignKey("tracking_status.id"), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_id", sa.String(length=36), sa.ForeignKey("auth_user.id"), nullable=True),
        sa.Column("production_plan_id", sa.String(length=64), nullable=True),
        sa.Column("shipment_id", sa.String(length=64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
    )
    op.create_index("ix_tracking_event_order_time", "tracking_event", ["order_id", "timestamp", "id"])

    op.create_table(
        "production_step",
        _id(),
        _created(),
        *_updated(),
        sa.Column("order_id", sa.String(length=36), sa.ForeignKey("prod_order.id"), nullable=False),
        sa.Column("production_plan_id", sa.String(length=64), nullable=False),
        sa.Column("step", sa.String(length=128), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("department_id", sa.String(length=36), sa.ForeignKey("department.id"), nullable=False),
        sa.Column("planned_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("planned_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=24), nullable=False),
        sa.Column("completion_percentage", sa.Integer(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.UniqueConstraint("order_id", "department_id", "step", name="uq_production_step_order_dept_step"),
    )
    op.create_index("ix_production_step_order_id", "production_step", ["order_id"])
    op.create_index("ix_production_step_production_plan_id", "production_step", ["production_plan_id"])

    op.create_table(
        "delay_record",
        _id(),
        _created(),
        sa.Column("order_id", sa.String(length=36), sa.ForeignKey("prod_order.id"), nullable=False),
        sa.Column("reason", sa.String(length=256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("delay_days", sa.Integer(), nullable=True),
        sa.Column("new_due_date", sa.Date(), nullable=True),
        sa.Column("is_cancelled", sa.Boolean(), nullable=False),
        sa.Column("reported_by", sa.String(length=36), sa.ForeignKey("auth_user.id"), nullable=True),
        sa.Column("reported_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approved_by", sa.String(length=36), sa.ForeignKey("auth_user.id"), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_delay_record_order_id", "delay_record", ["order_id"])

    # --- Production stages + transfers ---
    op.create_table(
        "weaving_order",
        *_stage_columns(),
        sa.Column("machine_id", sa.String(length=36), sa.ForeignKey("machine.id"), nullable=True),
        sa.Column("pattern", sa.String(length=128), nullable=True),
    )
    op.create_index("ix_weaving_order_order_id", "weaving_order", ["order_id"])

    op.create_table(
        "finishing_process",
        *_stage_columns(),
        sa.Column("process_type_id", sa.String(length=36), sa.ForeignKey("process_type.id"), nullable=True),
        sa.Column("quality_requirements", sa.JSON(), nullable=False),
    )
    op.create_index("ix_finishing_process_order_id", "finishing_process", ["order_id"])

    op.create_table(
        "process_transfer",
        _id(),
        _created(),
        *_updated(),
        sa.Column("order_id", sa.String(length=36), sa.ForeignKey("prod_order.id"), nullable=True),
        sa.Column("source_department_id", sa.String(length=36), sa.ForeignKey("department.id"), nullable=True),
        sa.Column("source_process_id", sa.String(length=36), nullable=False),
        sa.Column("source_process_type", sa.String(length=32), nullable=False),
        sa.Column("target_department_id", sa.String(length=36), sa.ForeignKey("department.id"), nullable=True),
        sa.Column("target_process_id", sa.String(length=36), nullable=True),
        sa.Column("target_process_type", sa.String(length=32), nullable=False),
        sa.Column("quantity", sa.Float(), nullable=False),
        sa.Column("unit", sa.String(length=16), nullable=False),
        sa.Column("transfer_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=36), sa.ForeignKey("auth_user.id"), nullable=True),
    )
    op.create_index("ix_process_transfer_order_id", "process_transfer", ["order_id"])
    op.create_index("ix_process_transfer_source_process_id", "process_transfer", ["source_process_id"])

    op.create_table(
        "document_sequence",
        sa.Column("key", sa.String(length=64), primary_key=True),
        sa.Column("next_value", sa.Integer(), nullable=False),
    )

    # --- Process cards ---
    op.create_table(
        "process_card",
        _id(),
        _created(),
        *_updated(),
        sa.Column("card_number", sa.String(length=64), nullable=False, unique=True),
        sa.Column("order_id", sa.String(length=36), sa.ForeignKey("prod_order.id"), nullable=True),
        sa.Column("production_plan_id", sa.String(length=64), nullable=True),
        sa.Column("route_template_id", sa.String(length=36), sa.ForeignKey("route_template.id"), nullable=True),
        sa.Column("fabric_type", sa.String(length=128), nullable=True),
        sa.Column("color", sa.String(length=64), nullable=True),
        sa.Column("quantity", sa.Float(), nullable=False),
        sa.Column("unit", sa.String(length=16), nullable=False),
        sa.Column("current_step", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index("ix_process_card_order_id", "process_card", ["order_id"])

    op.create_table(
        "card_route_step",
        _id(),
        sa.Column("card_id", sa.String(length=36), sa.ForeignKey("process_card.id"), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("department_id", sa.String(length=36), sa.ForeignKey("department.id"), nullable=True),
        sa.Column("process_type_id", sa.String(length=36), sa.ForeignKey("process_type.id"), nullable=True),
        sa.UniqueConstraint("card_id", "step_order", name="uq_card_route_step_order"),
    )
    op.create_index("ix_card_route_step_card_id", "card_route_step", ["card_id"])

    op.create_table(
        "card_process_record",
        _id(),
        _created(),
        sa.Column("card_id", sa.String(length=36), sa.ForeignKey("process_card.id"), nullable=False),
        sa.Column("machine_id", sa.String(length=36), sa.ForeignKey("machine.id"), nullable=False),
        sa.Column("operator_id", sa.String(length=36), sa.ForeignKey("auth_user.id"), nullable=False),
        sa.Column("process_type_id", sa.String(length=36), sa.ForeignKey("process_type.id"), nullable=False),
        sa.Column("department_id", sa.String(length=36), sa.ForeignKey("department.id"), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=24), nullable=False),
        sa.Column("quantity_processed", sa.Float(), nullable=False),
        sa.Column("quantity_defect", sa.Float(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index("ix_card_process_record_card_id", "card_process_record", ["card_id"])
    op.create_index(
        "uq_card_process_active",
        "card_process_record",
        ["card_id"],
        unique=True,
        postgresql_where=sa.text("status = 'inProgress'"),
        sqlite_where=sa.text("status = 'inProgress'"),
    )

    # --- Notifications, audit, event bus ---
    op.create_table(
        "notification",
        _id(),
        _created(),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("auth_user.id"), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("entity_type", sa.String(length=64), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False),
    )
    op.create_index("ix_notification_user_read", "notification", ["user_id", "is_read"])

    op.create_table(
        "sys_audit_log",
        _id(),
        _created(),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("actor", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
    )
    for col in ("tenant_id", "actor", "action", "entity_type", "entity_id"):
        op.create_index(f"ix_sys_audit_log_{col}", "sys_audit_log", [col])
    op.create_index("ix_audit_tenant_time", "sys_audit_log", ["tenant_id", "created_at"])

    op.create_table(
        "outbox_event",
        _id(),
        _created(),
        sa.Column("topic", sa.String(length=128), nullable=False),
        sa.Column("aggregate_type", sa.String(length=64), nullable=True),
        sa.Column("aggregate_id", sa.String(length=64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("delivered", sa.Boolean(), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_outbox_event_topic", "outbox_event", ["topic"])
    op.create_index("ix_outbox_aggregate", "outbox_event", ["aggregate_type", "aggregate_id"])
    op.create_index("ix_outbox_delivery", "outbox_event", ["delivered", "available_at"])

    op.create_table(
        "event_subscription",
        _id(),
        _created(),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("topic_pattern", sa.String(length=128), nullable=False),
        sa.Column("target_url", sa.Text(), nullable=False),
        sa.Column("headers", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("failure_count", sa.Integer(), nullable=False),
        sa.Column("last_delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_event_subscription_topic_pattern", "event_subscription", ["topic_pattern"])


def downgrade():
    for table in (
        "event_subscription",
        "outbox_event",
        "sys_audit_log",
        "notification",
        "card_process_record",
        "card_route_step",
        "process_card",
        "document_sequence",
        "process_transfer",
        "finishing_process",
        "weaving_order",
        "delay_record",
        "production_step",
        "tracking_event",
        "tracking_transition",
        "tracking_status",
        "order_shipment",
        "order_material_requirement",
        "prod_order",
        "route_template_step",
        "route_template",
        "process_type",
        "machine",
        "auth_role_permission",
        "auth_user_role",
        "auth_permission",
        "auth_role",
        "auth_user",
        "department",
    ):
        op.drop_table(table)
