"""Initial schema for addresses, transfers, checkpoints, holders and scanner locks.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Address surrogate ids
    op.create_table(
        "addresses",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("address"),
    )

    # Transfer events; (tx_hash, log_index) is the idempotency key
    op.create_table(
        "transfers",
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("block_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("from_address_id", sa.Integer(), nullable=False),
        sa.Column("to_address_id", sa.Integer(), nullable=False),
        sa.Column("raw_amount", sa.String(78), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tx_hash", "log_index"),
        sa.ForeignKeyConstraint(["from_address_id"], ["addresses.id"]),
        sa.ForeignKeyConstraint(["to_address_id"], ["addresses.id"]),
    )
    op.create_index("idx_transfers_block_number", "transfers", ["block_number"])
    op.create_index("idx_transfers_from_address_id", "transfers", ["from_address_id"])
    op.create_index("idx_transfers_to_address_id", "transfers", ["to_address_id"])

    # Scan checkpoints
    op.create_table(
        "meta",
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    # Holder balance projection
    op.create_table(
        "holder_balances",
        sa.Column("address_id", sa.Integer(), nullable=False),
        sa.Column("balance_raw", sa.String(80), nullable=False),
        sa.Column("tx_count", sa.Integer(), nullable=False),
        sa.Column("first_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_block_number", sa.BigInteger(), nullable=False),
        sa.Column("last_block_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_tx_hash", sa.String(66), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("address_id"),
        sa.ForeignKeyConstraint(["address_id"], ["addresses.id"], ondelete="CASCADE"),
    )

    # Lease rows for the scanner lock on stores without advisory locks
    op.create_table(
        "scanner_locks",
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    op.drop_table("scanner_locks")
    op.drop_table("holder_balances")
    op.drop_table("meta")

    op.drop_index("idx_transfers_to_address_id", table_name="transfers")
    op.drop_index("idx_transfers_from_address_id", table_name="transfers")
    op.drop_index("idx_transfers_block_number", table_name="transfers")
    op.drop_table("transfers")

    op.drop_table("addresses")
