"""Create marketplace_listings table

Revision ID: 001_marketplace_listings
Revises: None
Create Date: 2026-10-17

SQL mirror of the review spreadsheet. marketplace_url is unique so
INSERT ... ON CONFLICT (marketplace_url) DO NOTHING de-duplicates re-discovered
listings.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "001_marketplace_listings"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "marketplace_listings",
        sa.Column("id", sa.INTEGER(), autoincrement=True, nullable=False),
        sa.Column("marketplace_url", sa.String(), nullable=False, comment="Normalised listing URL (natural key)"),
        sa.Column("item_name", sa.String(), nullable=False),
        sa.Column("set_name", sa.String(), nullable=True),
        sa.Column("product_type", sa.String(), server_default="OTHER", nullable=False),
        sa.Column("price", sa.DECIMAL(10, 2), nullable=True, comment="NULL when the listing price could not be parsed"),
        sa.Column("quantity", sa.INTEGER(), server_default="1", nullable=False),
        sa.Column("location", sa.String(), nullable=True),
        sa.Column("language", sa.String(), server_default="English", nullable=False),
        sa.Column("condition", sa.String(), nullable=True),
        sa.Column("confidence", sa.FLOAT(), server_default="0", nullable=False),
        sa.Column("needs_review", sa.BOOLEAN(), server_default="true", nullable=False),
        sa.Column("status", sa.String(), server_default="Available", nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("search_term", sa.String(), nullable=True),
        sa.Column("ebay_median_price", sa.DECIMAL(10, 2), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("date_found", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name="pk_marketplace_listings"),
        sa.UniqueConstraint("marketplace_url", name="uq_marketplace_listings_marketplace_url"),
    )
    op.create_index("ix_marketplace_listings_date_found", "marketplace_listings", ["date_found"])
    op.create_index("ix_marketplace_listings_needs_review", "marketplace_listings", ["needs_review"])


def downgrade() -> None:
    op.drop_index("ix_marketplace_listings_needs_review", table_name="marketplace_listings")
    op.drop_index("ix_marketplace_listings_date_found", table_name="marketplace_listings")
    op.drop_table("marketplace_listings")
