"""Source reputation schema: sources, raters, ratings, verifications, anomalies, history."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


# Revision identifiers, used by Alembic.
revision = "0001_source_reputation"
down_revision = None
branch_labels = None
depends_on = None


JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

ANOMALY_TYPES = ("spike", "coordinated", "bot_suspected")
CHANGE_REASONS = ("user_rating", "decay", "cross_reference", "manual", "anomaly_correction")


def upgrade() -> None:
    op.create_table(
        "sources",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("reliability_score", sa.SmallInteger(), nullable=False, server_default=sa.text("50")),
        sa.Column("last_content_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cumulative_decay_applied", sa.SmallInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_decay_applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("score_inputs", JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "reliability_score >= 0 AND reliability_score <= 100",
            name="ck_sources_reliability_score_range",
        ),
        sa.CheckConstraint(
            "cumulative_decay_applied >= 0",
            name="ck_sources_cumulative_decay_non_negative",
        ),
    )

    op.create_table(
        "raters",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("trust_score", sa.Float(), nullable=False, server_default=sa.text("1.0")),
        sa.Column("total_ratings_given", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("accurate_ratings", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("trust_score > 0", name="ck_raters_trust_score_positive"),
    )

    op.create_table(
        "rater_daily_quotas",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "rater_id",
            sa.Uuid(),
            sa.ForeignKey("raters.id", name="fk_rater_daily_quotas_rater_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("rating_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.UniqueConstraint("rater_id", "day", name="uq_rater_daily_quotas_rater_day"),
        sa.CheckConstraint("rating_count >= 0", name="ck_rater_daily_quotas_count_non_negative"),
    )

    op.create_table(
        "source_ratings",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "source_id",
            sa.Uuid(),
            sa.ForeignKey("sources.id", name="fk_source_ratings_source_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "rater_id",
            sa.Uuid(),
            sa.ForeignKey("raters.id", name="fk_source_ratings_rater_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("value", sa.SmallInteger(), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("weight", sa.Float(), nullable=False, server_default=sa.text("1.0")),
        sa.Column("is_flagged", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("flag_reason", sa.Text(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("source_id", "rater_id", name="uq_source_ratings_source_rater"),
        sa.CheckConstraint("value >= 1 AND value <= 5", name="ck_source_ratings_value_range"),
        sa.CheckConstraint("weight > 0", name="ck_source_ratings_weight_positive"),
    )
    op.create_index("ix_source_ratings_source_id", "source_ratings", ["source_id"])
    op.create_index("ix_source_ratings_rater_id", "source_ratings", ["rater_id"])
    op.create_index("ix_source_ratings_source_created", "source_ratings", ["source_id", "created_at"])
    op.create_index("ix_source_ratings_source_submitted", "source_ratings", ["source_id", "submitted_at"])

    op.create_table(
        "cross_reference_results",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "source_id",
            sa.Uuid(),
            sa.ForeignKey("sources.id", name="fk_cross_reference_results_source_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("content_id", sa.Text(), nullable=True),
        sa.Column("claim_id", sa.Text(), nullable=True),
        sa.Column("was_accurate", sa.Boolean(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False, server_default=sa.text("0.5")),
        sa.Column("verification_note", sa.Text(), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "confidence >= 0 AND confidence <= 1",
            name="ck_cross_reference_results_confidence_range",
        ),
    )
    op.create_index("ix_cross_reference_results_source_id", "cross_reference_results", ["source_id"])
    op.create_index("ix_cross_reference_results_content_id", "cross_reference_results", ["content_id"])
    op.create_index(
        "ix_cross_reference_results_source_verified",
        "cross_reference_results",
        ["source_id", "verified_at"],
    )

    op.create_table(
        "rating_anomalies",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "source_id",
            sa.Uuid(),
            sa.ForeignKey("sources.id", name="fk_rating_anomalies_source_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("anomaly_type", sa.Enum(*ANOMALY_TYPES, name="rating_anomaly_type"), nullable=False),
        sa.Column("affected_rating_ids", JSON, nullable=False),
        sa.Column("details", JSON, nullable=False),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolution_action", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_rating_anomalies_source_id", "rating_anomalies", ["source_id"])
    op.create_index("ix_rating_anomalies_source_open", "rating_anomalies", ["source_id", "resolved"])
    op.create_index("ix_rating_anomalies_detected_at", "rating_anomalies", ["detected_at"])

    op.create_table(
        "reliability_history",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "source_id",
            sa.Uuid(),
            sa.ForeignKey("sources.id", name="fk_reliability_history_source_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("old_score", sa.SmallInteger(), nullable=False),
        sa.Column("new_score", sa.SmallInteger(), nullable=False),
        sa.Column("reason", sa.Enum(*CHANGE_REASONS, name="reliability_change_reason"), nullable=False),
        sa.Column("change_metadata", JSON, nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_reliability_history_source_changed",
        "reliability_history",
        ["source_id", "changed_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_reliability_history_source_changed", table_name="reliability_history")
    op.drop_table("reliability_history")

    op.drop_index("ix_rating_anomalies_detected_at", table_name="rating_anomalies")
    op.drop_index("ix_rating_anomalies_source_open", table_name="rating_anomalies")
    op.drop_index("ix_rating_anomalies_source_id", table_name="rating_anomalies")
    op.drop_table("rating_anomalies")

    op.drop_index("ix_cross_reference_results_source_verified", table_name="cross_reference_results")
    op.drop_index("ix_cross_reference_results_content_id", table_name="cross_reference_results")
    op.drop_index("ix_cross_reference_results_source_id", table_name="cross_reference_results")
    op.drop_table("cross_reference_results")

    op.drop_index("ix_source_ratings_source_submitted", table_name="source_ratings")
    op.drop_index("ix_source_ratings_source_created", table_name="source_ratings")
    op.drop_index("ix_source_ratings_rater_id", table_name="source_ratings")
    op.drop_index("ix_source_ratings_source_id", table_name="source_ratings")
    op.drop_table("source_ratings")

    op.drop_table("rater_daily_quotas")
    op.drop_table("raters")
    op.drop_table("sources")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        sa.Enum(name="reliability_change_reason").drop(bind, checkfirst=True)
        sa.Enum(name="rating_anomaly_type").drop(bind, checkfirst=True)
