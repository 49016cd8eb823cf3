"""questions, job metadata, results and request log

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(with_updated: bool = True):
    columns = [
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        )
    ]
    if with_updated:
        columns.append(
            sa.Column(
                "updated_at",
                sa.TIMESTAMP(timezone=True),
                server_default=sa.text("now()"),
                nullable=False,
            )
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "questions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("question_content", sa.Text(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("sql_text", sa.Text(), server_default="", nullable=False),
        sa.Column("sql_hash", sa.String(), server_default="", nullable=False),
        sa.Column("plan", sa.JSON(), nullable=True),
        sa.Column("type", sa.String(), server_default="user", nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_questions_sql_hash"), "questions", ["sql_hash"])

    op.create_table(
        "job_metadata",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("question_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        sa.Column("failed_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["question_id"], ["questions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id"),
    )
    op.create_index(op.f("ix_job_metadata_question_id"), "job_metadata", ["question_id"])

    op.create_table(
        "question_results",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("question_id", sa.String(), nullable=False),
        sa.Column("result", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["question_id"], ["questions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("question_id"),
    )

    op.create_table(
        "question_requests",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("question_id", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=True),
        *_timestamps(with_updated=False),
        sa.ForeignKeyConstraint(["question_id"], ["questions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "question_requests_question_id_created_at_idx",
        "question_requests",
        ["question_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("question_requests_question_id_created_at_idx", table_name="question_requests")
    op.drop_table("question_requests")
    op.drop_table("question_results")
    op.drop_index(op.f("ix_job_metadata_question_id"), table_name="job_metadata")
    op.drop_table("job_metadata")
    op.drop_index(op.f("ix_questions_sql_hash"), table_name="questions")
    op.drop_table("questions")
