"""create_job_and_prompt_queue_tables

Revision ID: 3f2a9c1d7b40
Revises:
Create Date: 2025-10-20 09:12:31.118204

"""

from typing import Sequence, Union

import sqlalchemy as sa
import sqlmodel

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f2a9c1d7b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enum columns store member names, as SQLModel maps str Enums
row_status = sa.Enum("IDLE", "QUEUED", "RUNNING", "PARTIAL", "DONE", "ERROR", name="rowstatus")
job_status = sa.Enum(
    "QUEUED", "SUBMITTED", "RUNNING", "SAVING", "SUCCEEDED", "FAILED", name="generationjobstatus"
)
prompt_status = sa.Enum("PENDING", "GENERATING", "COMPLETED", "FAILED", name="promptstatus")
prompt_job_status = sa.Enum(
    "QUEUED", "PROCESSING", "COMPLETED", "FAILED", name="promptjobstatus"
)
prompt_operation = sa.Enum("GENERATE", "ENHANCE", name="promptoperation")
swap_mode = sa.Enum("FACE", "FACE_HAIR", name="swapmode")


def upgrade() -> None:
    """Create rows, generation jobs, prompt jobs, generated images and usage tables."""
    op.create_table(
        "models",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=True),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("default_prompt", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column(
            "default_ref_headshot_path",
            sqlmodel.sql.sqltypes.AutoString(length=1000),
            nullable=True,
        ),
        sa.Column("output_width", sa.Integer(), nullable=False),
        sa.Column("output_height", sa.Integer(), nullable=False),
        sa.Column("provider_model", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_models_team_id"), "models", ["team_id"])
    op.create_index(op.f("ix_models_owner_id"), "models", ["owner_id"])

    op.create_table(
        "model_rows",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("model_id", sa.Uuid(), nullable=False),
        sa.Column("created_by", sa.Uuid(), nullable=False),
        sa.Column("ref_image_paths", sa.JSON(), nullable=False),
        sa.Column(
            "target_image_path", sqlmodel.sql.sqltypes.AutoString(length=1000), nullable=False
        ),
        sa.Column("prompt_override", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("status", row_status, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["model_id"], ["models.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_model_rows_model_id"), "model_rows", ["model_id"])
    op.create_index(op.f("ix_model_rows_created_by"), "model_rows", ["created_by"])

    op.create_table(
        "variant_rows",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("prompt", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("image_paths", sa.JSON(), nullable=False),
        sa.Column("output_width", sa.Integer(), nullable=False),
        sa.Column("output_height", sa.Integer(), nullable=False),
        sa.Column("status", row_status, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_variant_rows_user_id"), "variant_rows", ["user_id"])

    op.create_table(
        "prompt_generation_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("row_id", sa.Uuid(), nullable=True),
        sa.Column("model_id", sa.Uuid(), nullable=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("operation", prompt_operation, nullable=False),
        sa.Column("swap_mode", swap_mode, nullable=False),
        sa.Column("ref_urls", sa.JSON(), nullable=False),
        sa.Column("target_url", sqlmodel.sql.sqltypes.AutoString(length=2000), nullable=False),
        sa.Column("existing_prompt", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("user_instructions", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("status", prompt_job_status, nullable=False),
        sa.Column("generated_prompt", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("enhanced_prompt", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("error", sqlmodel.sql.sqltypes.AutoString(length=2000), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("available_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("retry_count <= max_retries", name="ck_prompt_jobs_retry_budget"),
        sa.CheckConstraint("priority BETWEEN 1 AND 10", name="ck_prompt_jobs_priority_range"),
        sa.ForeignKeyConstraint(["model_id"], ["models.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_prompt_generation_jobs_row_id"), "prompt_generation_jobs", ["row_id"])
    op.create_index(
        op.f("ix_prompt_generation_jobs_model_id"), "prompt_generation_jobs", ["model_id"]
    )
    op.create_index(
        op.f("ix_prompt_generation_jobs_user_id"), "prompt_generation_jobs", ["user_id"]
    )
    op.create_index(op.f("ix_prompt_generation_jobs_status"), "prompt_generation_jobs", ["status"])
    op.create_index(
        op.f("ix_prompt_generation_jobs_priority"), "prompt_generation_jobs", ["priority"]
    )
    op.create_index(
        op.f("ix_prompt_generation_jobs_created_at"), "prompt_generation_jobs", ["created_at"]
    )

    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("row_id", sa.Uuid(), nullable=True),
        sa.Column("variant_row_id", sa.Uuid(), nullable=True),
        sa.Column("model_id", sa.Uuid(), nullable=True),
        sa.Column("team_id", sa.Uuid(), nullable=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("status", job_status, nullable=False),
        sa.Column("request_payload", sa.JSON(), nullable=False),
        sa.Column(
            "provider_request_id", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=True
        ),
        sa.Column("prompt_job_id", sa.Uuid(), nullable=True),
        sa.Column("prompt_status", prompt_status, nullable=True),
        sa.Column("error", sqlmodel.sql.sqltypes.AutoString(length=2000), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "(row_id IS NULL) <> (variant_row_id IS NULL)", name="ck_jobs_single_parent_row"
        ),
        sa.ForeignKeyConstraint(["row_id"], ["model_rows.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["variant_row_id"], ["variant_rows.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["model_id"], ["models.id"]),
        sa.ForeignKeyConstraint(["prompt_job_id"], ["prompt_generation_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_jobs_row_id"), "jobs", ["row_id"])
    op.create_index(op.f("ix_jobs_variant_row_id"), "jobs", ["variant_row_id"])
    op.create_index(op.f("ix_jobs_model_id"), "jobs", ["model_id"])
    op.create_index(op.f("ix_jobs_team_id"), "jobs", ["team_id"])
    op.create_index(op.f("ix_jobs_user_id"), "jobs", ["user_id"])
    op.create_index(op.f("ix_jobs_status"), "jobs", ["status"])
    op.create_index(op.f("ix_jobs_prompt_job_id"), "jobs", ["prompt_job_id"])
    op.create_index(op.f("ix_jobs_created_at"), "jobs", ["created_at"])

    op.create_table(
        "generated_images",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=False),
        sa.Column("row_id", sa.Uuid(), nullable=True),
        sa.Column("variant_row_id", sa.Uuid(), nullable=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("output_path", sqlmodel.sql.sqltypes.AutoString(length=1000), nullable=False),
        sa.Column("source_url", sqlmodel.sql.sqltypes.AutoString(length=2000), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", "output_path", name="uq_generated_images_job_path"),
    )
    op.create_index(op.f("ix_generated_images_job_id"), "generated_images", ["job_id"])
    op.create_index(op.f("ix_generated_images_row_id"), "generated_images", ["row_id"])
    op.create_index(
        op.f("ix_generated_images_variant_row_id"), "generated_images", ["variant_row_id"]
    )
    op.create_index(op.f("ix_generated_images_user_id"), "generated_images", ["user_id"])

    op.create_table(
        "user_usage",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("step", sqlmodel.sql.sqltypes.AutoString(length=50), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "step", name="uq_user_usage_user_step"),
    )
    op.create_index(op.f("ix_user_usage_user_id"), "user_usage", ["user_id"])


def downgrade() -> None:
    """Drop all queue tables and their enum types."""
    op.drop_table("user_usage")
    op.drop_table("generated_images")
    op.drop_table("jobs")
    op.drop_table("prompt_generation_jobs")
    op.drop_table("variant_rows")
    op.drop_table("model_rows")
    op.drop_table("models")

    bind = op.get_bind()
    for enum in (
        swap_mode,
        prompt_operation,
        prompt_job_status,
        prompt_status,
        job_status,
        row_status,
    ):
        enum.drop(bind, checkfirst=True)
