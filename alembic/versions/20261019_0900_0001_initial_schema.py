"""Initial pvesync state schema

Revision ID: 0001
Revises: 
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.sqlite import JSON

# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _guest_table(name: str) -> None:
    op.create_table(
        name,
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('vmid', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('cores', sa.Integer(), nullable=False),
        sa.Column('memory', sa.Integer(), nullable=False, comment='Memory in bytes'),
        sa.Column('template', sa.Boolean(), nullable=False),
        sa.Column('record', JSON(), nullable=False, comment='Full resource record'),
        sa.Column('node_name', sa.String(length=255), nullable=False),
        sa.ForeignKeyConstraint(['node_name'], ['nodes.name'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('node_name', 'vmid', name=f'uq_{name}_node_vmid'),
    )
    op.create_index(f'ix_{name}_node_name', name, ['node_name'])


def upgrade() -> None:
    """Upgrade database schema."""

    op.create_table(
        'nodes',
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=50), nullable=False),
        sa.Column('cpus', sa.Integer(), nullable=False),
        sa.Column('memory', sa.Integer(), nullable=False, comment='Memory in bytes'),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('record', JSON(), nullable=False, comment='Full resource record'),
        sa.PrimaryKeyConstraint('name'),
    )

    _guest_table('vms')
    _guest_table('containers')

    op.create_table(
        'storage_volumes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('node_name', sa.String(length=255), nullable=False),
        sa.Column('volid', sa.String(length=512), nullable=False),
        sa.Column('pool', sa.String(length=255), nullable=False),
        sa.Column('size', sa.Integer(), nullable=False, comment='Size in bytes'),
        sa.Column('attachment_kind', sa.String(length=50), nullable=True),
        sa.Column('attachment_vmid', sa.Integer(), nullable=True),
        sa.Column('detached', sa.Boolean(), nullable=False),
        sa.Column('record', JSON(), nullable=False, comment='Full resource record'),
        sa.ForeignKeyConstraint(['node_name'], ['nodes.name'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('node_name', 'volid', name='uq_storage_volumes_node_volid'),
    )
    op.create_index('ix_storage_volumes_node_name', 'storage_volumes', ['node_name'])

    op.create_table(
        'snapshots',
        sa.Column('sequence', sa.Integer(), autoincrement=False, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('resources', JSON(), nullable=False, comment='Committed resource records'),
        sa.Column('diff', JSON(), nullable=False, comment='Serialized Diff'),
        sa.Column('audit', JSON(), nullable=False),
        sa.Column('added_count', sa.Integer(), nullable=False),
        sa.Column('removed_count', sa.Integer(), nullable=False),
        sa.Column('changed_count', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('sequence'),
    )
    op.create_index('idx_snapshots_created_at', 'snapshots', ['created_at'])


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index('idx_snapshots_created_at', table_name='snapshots')
    op.drop_table('snapshots')
    op.drop_index('ix_storage_volumes_node_name', table_name='storage_volumes')
    op.drop_table('storage_volumes')
    for name in ('containers', 'vms'):
        op.drop_index(f'ix_{name}_node_name', table_name=name)
        op.drop_table(name)
    op.drop_table('nodes')
