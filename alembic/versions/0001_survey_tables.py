"""survey templates, sessions and responses

Revision ID: 0001
Revises:
Create Date: 2026-10-18 09:00:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "survey_templates",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("questions", sa.Text(), nullable=False),
        sa.Column("display_mode", sa.String(length=20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "survey_sessions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("token", sa.String(length=16), nullable=False, unique=True),
        sa.Column("patient_id", sa.String(length=36), nullable=True),
        sa.Column("template_id", sa.String(length=36), sa.ForeignKey("survey_templates.id"), nullable=False),
        sa.Column("respondent_name", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("created_by", sa.String(length=50), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_survey_sessions_patient_id", "survey_sessions", ["patient_id"])
    op.create_index("ix_survey_sessions_status", "survey_sessions", ["status"])

    op.create_table(
        "survey_responses",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("session_id", sa.String(length=36), nullable=True, unique=True),
        sa.Column("patient_id", sa.String(length=36), nullable=True),
        sa.Column("template_id", sa.String(length=36), nullable=False),
        sa.Column("answers", sa.Text(), nullable=False),
        sa.Column("respondent_name", sa.String(length=255), nullable=True),
        sa.Column("patient_name", sa.String(length=255), nullable=True),
        sa.Column("chart_number", sa.String(length=50), nullable=True),
        sa.Column("doctor_name", sa.String(length=255), nullable=True),
        sa.Column("gender", sa.String(length=10), nullable=True),
        sa.Column("age", sa.String(length=10), nullable=True),
        sa.Column("submitted_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_survey_responses_patient_id", "survey_responses", ["patient_id"])
    op.create_index("ix_survey_responses_template_id", "survey_responses", ["template_id"])


def downgrade() -> None:
    op.drop_index("ix_survey_responses_template_id", table_name="survey_responses")
    op.drop_index("ix_survey_responses_patient_id", table_name="survey_responses")
    op.drop_table("survey_responses")
    op.drop_index("ix_survey_sessions_status", table_name="survey_sessions")
    op.drop_index("ix_survey_sessions_patient_id", table_name="survey_sessions")
    op.drop_table("survey_sessions")
    op.drop_table("survey_templates")
